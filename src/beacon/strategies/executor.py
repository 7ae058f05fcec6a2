from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from beacon.domain.models import EndpointDescriptor
from beacon.errors import UnknownStrategyError
from beacon.strategies.blocks import BLOCKS, BlockContext, BlockFn, BlockOutcome
from beacon.strategies.catalog import STRATEGIES, Strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyResult:
    strategy_id: str
    success: bool
    error: Optional[str] = None
    failed_block: Optional[str] = None
    completed_blocks: list[str] = field(default_factory=list)
    # blocks whose compensation ran, in the order it ran
    rolled_back: list[str] = field(default_factory=list)
    rollback_errors: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)
    created_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    server_config_files: list[str] = field(default_factory=list)
    conflict_id: Optional[int] = None


class StrategyExecutor:
    """Runs one strategy as a bounded saga.

    Blocks run in order. Each success pushes its compensation; the first
    failure unwinds the stack in reverse and the strategy fails. No block is
    ever retried.
    """

    def __init__(
        self,
        blocks: Optional[dict[str, BlockFn]] = None,
        strategies: Optional[dict[str, Strategy]] = None,
    ):
        self.blocks = dict(BLOCKS if blocks is None else blocks)
        self.strategies = dict(STRATEGIES if strategies is None else strategies)

    def strategy(self, strategy_id: str) -> Strategy:
        try:
            return self.strategies[strategy_id]
        except KeyError:
            raise UnknownStrategyError(strategy_id) from None

    def execute(self, strategy_id: str, endpoint: EndpointDescriptor, ctx: BlockContext) -> StrategyResult:
        strategy = self.strategies.get(strategy_id)
        if strategy is None:
            return StrategyResult(strategy_id, False, error=f"unknown strategy: {strategy_id}")

        undo: list[tuple[str, Callable[[], None]]] = []
        completed: list[str] = []
        details: list[str] = []
        created: list[str] = []
        modified: list[str] = []
        server_config: list[str] = []

        for block_id in strategy.blocks:
            outcome = self._run_block(block_id, endpoint, ctx, strategy)
            details.extend(outcome.details)
            if not outcome.success:
                logger.info(
                    "strategy %s for %s failed at %s: %s", strategy_id, endpoint.key, block_id, outcome.error
                )
                rolled_back, rollback_errors = self._unwind(undo)
                return StrategyResult(
                    strategy_id,
                    False,
                    error=outcome.error,
                    failed_block=block_id,
                    completed_blocks=completed,
                    rolled_back=rolled_back,
                    rollback_errors=rollback_errors,
                    details=details,
                    conflict_id=outcome.conflict_id,
                )

            completed.append(block_id)
            if outcome.compensation is not None:
                undo.append((block_id, outcome.compensation))
            created.extend(outcome.created_files)
            modified.extend(outcome.modified_files)
            server_config.extend(outcome.server_config_files)

        logger.info("strategy %s succeeded for %s", strategy_id, endpoint.key)
        return StrategyResult(
            strategy_id,
            True,
            completed_blocks=completed,
            details=details,
            created_files=created,
            modified_files=modified,
            server_config_files=server_config,
        )

    def _run_block(
        self, block_id: str, endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy
    ) -> BlockOutcome:
        fn = self.blocks.get(block_id)
        if fn is None:
            return BlockOutcome(False, f"unknown building block: {block_id}")
        logger.debug("running block %s for %s", block_id, endpoint.key)
        try:
            return fn(endpoint, ctx, strategy)
        except Exception as e:
            logger.exception("block %s raised for %s", block_id, endpoint.key)
            return BlockOutcome(False, f"{block_id} raised {type(e).__name__}: {e}")

    @staticmethod
    def _unwind(undo: list[tuple[str, Callable[[], None]]]) -> tuple[list[str], list[str]]:
        rolled_back: list[str] = []
        errors: list[str] = []
        while undo:
            block_id, compensate = undo.pop()
            try:
                compensate()
            except Exception as e:
                logger.exception("compensation for %s failed", block_id)
                errors.append(f"{block_id}: {e}")
                continue
            rolled_back.append(block_id)
            logger.debug("rolled back %s", block_id)
        return rolled_back, errors
