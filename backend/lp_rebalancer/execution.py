"""
Rebalance decision and sequential execution.

For every project whose pool has drifted past the deviation threshold the
engine builds an explicit, ordered list of contract calls and hands them to
a single SequentialDispatcher:

  accrueInterest                               (always first)
  decreaseLiquidity -> collect                 (pool above target)
  [approveToken0] -> [approveToken1] -> increaseLiquidity   (pool below target)

Each call is dispatched only after the previous one returned its hash, so a
wallet's nonce sequence and the data dependencies between calls (collect
needs owed tokens, increase needs allowances) are respected.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from web3 import Web3

from .abis import CORNERSTONE_PROJECT_ABI, ERC20_ABI, POSITION_MANAGER_ABI
from .amm_math import (
    apply_slippage,
    expected_amounts,
    liquidity_for_amounts,
    liquidity_to_remove,
    sqrt_price_x96_to_sqrt_price,
    tick_to_sqrt_price,
)
from .config import MAX_UINT128, POOL_FEE_TIER, NetworkConfig, RebalancerSettings
from .dispatch import ContractCallDispatcher
from .errors import ExecutionError, PolicyError, RebalancerError
from .models import ActionRecord, DelegationContext, Direction, PositionInfo, ProjectMetrics
from .rpc import DEFAULT_RETRY_POLICY, RetryPolicy, call_fn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedAction:
    """One state-mutating contract call, not yet dispatched."""
    name: str
    contract_address: str
    abi: list[dict]
    function_name: str
    args: list[Any]
    token_id: int | None = None


def should_rebalance(metric: ProjectMetrics, threshold_bps: int) -> bool:
    return metric.direction != Direction.NONE and metric.deviation_bps >= threshold_bps


def _guards_available(metric: ProjectMetrics, position: PositionInfo, slippage_bps: int | None) -> bool:
    if slippage_bps is None:
        return False
    if metric.sqrt_price_x96 <= 0 or position.fee != POOL_FEE_TIER:
        logger.warning(
            "No pool price for position %d (fee %d); minimum-output guards set to zero",
            position.token_id, position.fee,
        )
        return False
    return True


def decrease_guards(
    metric: ProjectMetrics,
    position: PositionInfo,
    liquidity: int,
    slippage_bps: int | None,
) -> tuple[int, int]:
    """Minimum token amounts accepted when removing `liquidity` from a position."""
    if not _guards_available(metric, position, slippage_bps):
        return 0, 0
    amount0, amount1 = expected_amounts(
        liquidity, metric.sqrt_price_x96, position.tick_lower, position.tick_upper
    )
    return apply_slippage(amount0, slippage_bps), apply_slippage(amount1, slippage_bps)


def increase_guards(
    metric: ProjectMetrics,
    position: PositionInfo,
    balance0: int,
    balance1: int,
    slippage_bps: int | None,
) -> tuple[int, int]:
    """
    Minimum token amounts accepted when adding (balance0, balance1).

    The position manager only consumes the amounts that fit the range's
    ratio at the current price, so the guard is derived from the liquidity
    the balances can actually mint rather than from the balances themselves.
    """
    if not _guards_available(metric, position, slippage_bps):
        return 0, 0
    sqrt_p = float(sqrt_price_x96_to_sqrt_price(metric.sqrt_price_x96))
    liquidity = liquidity_for_amounts(
        sqrt_p,
        tick_to_sqrt_price(position.tick_lower),
        tick_to_sqrt_price(position.tick_upper),
        balance0,
        balance1,
    )
    amount0, amount1 = expected_amounts(
        liquidity, metric.sqrt_price_x96, position.tick_lower, position.tick_upper
    )
    return (
        apply_slippage(min(amount0, balance0), slippage_bps),
        apply_slippage(min(amount1, balance1), slippage_bps),
    )


def plan_accrual(project_address: str) -> list[PlannedAction]:
    return [
        PlannedAction(
            name="accrueInterest",
            contract_address=project_address,
            abi=CORNERSTONE_PROJECT_ABI,
            function_name="accrueInterest",
            args=[],
        )
    ]


def plan_decrease(
    position: PositionInfo,
    network: NetworkConfig,
    recipient: str,
    liquidity: int,
    deadline: int,
    amount0_min: int = 0,
    amount1_min: int = 0,
) -> list[PlannedAction]:
    """decreaseLiquidity followed by a collect of everything owed."""
    return [
        PlannedAction(
            name="decreaseLiquidity",
            contract_address=network.position_manager,
            abi=POSITION_MANAGER_ABI,
            function_name="decreaseLiquidity",
            args=[{
                "tokenId": position.token_id,
                "liquidity": liquidity,
                "amount0Min": amount0_min,
                "amount1Min": amount1_min,
                "deadline": deadline,
            }],
            token_id=position.token_id,
        ),
        PlannedAction(
            name="collect",
            contract_address=network.position_manager,
            abi=POSITION_MANAGER_ABI,
            function_name="collect",
            args=[{
                "tokenId": position.token_id,
                "recipient": recipient,
                "amount0Max": MAX_UINT128,
                "amount1Max": MAX_UINT128,
            }],
            token_id=position.token_id,
        ),
    ]


def plan_increase(
    position: PositionInfo,
    network: NetworkConfig,
    balances: tuple[int, int],
    allowances: tuple[int, int],
    deadline: int,
    amount0_min: int = 0,
    amount1_min: int = 0,
) -> list[PlannedAction]:
    """
    Approvals (exact balance, only where short) followed by increaseLiquidity.

    Returns no actions when the wallet holds neither token.
    """
    balance0, balance1 = balances
    if balance0 == 0 and balance1 == 0:
        return []

    actions = []
    tokens = ((position.token0, balance0, allowances[0]), (position.token1, balance1, allowances[1]))
    for index, (token, balance, allowance) in enumerate(tokens):
        if balance > 0 and allowance < balance:
            actions.append(PlannedAction(
                name=f"approveToken{index}",
                contract_address=token,
                abi=ERC20_ABI,
                function_name="approve",
                args=[network.position_manager, balance],
                token_id=position.token_id,
            ))

    actions.append(PlannedAction(
        name="increaseLiquidity",
        contract_address=network.position_manager,
        abi=POSITION_MANAGER_ABI,
        function_name="increaseLiquidity",
        args=[{
            "tokenId": position.token_id,
            "amount0Desired": balance0,
            "amount1Desired": balance1,
            "amount0Min": amount0_min,
            "amount1Min": amount1_min,
            "deadline": deadline,
        }],
        token_id=position.token_id,
    ))
    return actions


class SequentialDispatcher:
    """
    Runs planned actions strictly one after another through a dispatcher.

    Every returned hash becomes an ActionRecord before the next action is
    sent. A failure raises ExecutionError carrying all records so far.
    """

    def __init__(self, dispatch: ContractCallDispatcher, provider: Web3, delegation: DelegationContext):
        self.dispatch = dispatch
        self.provider = provider
        self.delegation = delegation
        self.records: list[ActionRecord] = []

    def run(self, project_address: str, actions: list[PlannedAction]) -> list[ActionRecord]:
        landed = []
        for action in actions:
            try:
                tx_hash = self.dispatch(
                    provider=self.provider,
                    pkp_public_key=self.delegation.pkp_public_key,
                    caller_address=self.delegation.pkp_address,
                    abi=action.abi,
                    contract_address=action.contract_address,
                    function_name=action.function_name,
                    args=action.args,
                )
            except Exception as exc:
                target = project_address
                if action.token_id is not None:
                    target = f"{project_address} position {action.token_id}"
                raise ExecutionError(
                    f"{action.name} failed for {target}: {exc}", self.records
                ) from exc

            record = ActionRecord(
                project_address=project_address,
                name=action.name,
                tx_hash=tx_hash,
                token_id=action.token_id,
            )
            self.records.append(record)
            landed.append(record)
            logger.info("%s %s -> %s", project_address, action.name, tx_hash)
        return landed


def read_token_state(
    w3: Web3,
    position: PositionInfo,
    owner: str,
    spender: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> tuple[tuple[int, int], tuple[int, int]]:
    """Concurrently read both token balances and allowances: ((b0, b1), (a0, a1))."""
    token0 = w3.eth.contract(address=position.token0, abi=ERC20_ABI)
    token1 = w3.eth.contract(address=position.token1, abi=ERC20_ABI)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [
            pool.submit(call_fn, token0.functions.balanceOf(owner), "increase: balanceOf token0", policy),
            pool.submit(call_fn, token1.functions.balanceOf(owner), "increase: balanceOf token1", policy),
            pool.submit(call_fn, token0.functions.allowance(owner, spender), "increase: allowance token0", policy),
            pool.submit(call_fn, token1.functions.allowance(owner, spender), "increase: allowance token1", policy),
        ]
    balance0, balance1, allowance0, allowance1 = (int(f.result()) for f in futures)
    return (balance0, balance1), (allowance0, allowance1)


def execute_rebalance(
    w3: Web3,
    metrics: list[ProjectMetrics],
    network: NetworkConfig,
    delegation: DelegationContext,
    dispatch: ContractCallDispatcher,
    settings: RebalancerSettings | None = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    clock: Callable[[], float] = time.time,
) -> list[ActionRecord]:
    """
    Rebalance every eligible project, in registry order.

    Returns the ActionRecords of all calls that landed.

    Raises:
        PolicyError: the delegation cannot sign
        ExecutionError: a dispatched call or a read between dispatches failed
            (earlier calls stay applied and are carried in `actions`)

    A RebalancerError raised mid-run keeps its category and gets the landed
    records attached as `actions`.
    """
    settings = settings or RebalancerSettings()
    if not delegation.can_sign:
        raise PolicyError("Delegation context missing PKP information")

    dispatcher = SequentialDispatcher(dispatch, w3, delegation)

    for metric in metrics:
        if not should_rebalance(metric, settings.deviation_threshold_bps):
            continue

        project_address = metric.project.project_address
        try:
            _rebalance_project(w3, metric, network, dispatcher, settings, policy, clock)
        except ExecutionError:
            raise
        except RebalancerError as exc:
            exc.actions = list(dispatcher.records)
            raise
        except Exception as exc:
            raise ExecutionError(
                f"Rebalance of {project_address} failed: {exc}", dispatcher.records
            ) from exc

    return dispatcher.records


def _rebalance_project(
    w3: Web3,
    metric: ProjectMetrics,
    network: NetworkConfig,
    dispatcher: SequentialDispatcher,
    settings: RebalancerSettings,
    policy: RetryPolicy,
    clock: Callable[[], float],
) -> None:
    project_address = metric.project.project_address
    owner = dispatcher.delegation.pkp_address
    logger.info(
        "Rebalancing project %s: %s, deviation %d bps, %d positions",
        project_address, metric.direction.value, metric.deviation_bps, len(metric.positions),
    )
    dispatcher.run(project_address, plan_accrual(project_address))

    for position in metric.positions:
        if position.liquidity == 0:
            continue

        deadline = int(clock()) + settings.deadline_seconds

        if metric.direction == Direction.DECREASE:
            liquidity = liquidity_to_remove(position.liquidity, settings.rebalance_liquidity_bps)
            amount0_min, amount1_min = decrease_guards(
                metric, position, liquidity, settings.slippage_bps
            )
            actions = plan_decrease(
                position, network, owner, liquidity, deadline, amount0_min, amount1_min
            )
        else:
            balances, allowances = read_token_state(
                w3, position, owner, network.position_manager, policy
            )
            amount0_min, amount1_min = increase_guards(
                metric, position, balances[0], balances[1], settings.slippage_bps
            )
            actions = plan_increase(
                position, network, balances, allowances, deadline, amount0_min, amount1_min
            )
            if not actions:
                logger.info(
                    "Skipping position %d: wallet holds neither token", position.token_id
                )
                continue

        dispatcher.run(project_address, actions)
