"""
Per-stock loop runner.

Drives a processing function over a list of stock codes one at a time:
- each code runs inside its own failure boundary (a failed code is logged
  and left out, the loop always moves on)
- a fixed delay is slept between codes to go easy on the remote source
- codes already collected can be skipped on re-runs
- results are merged into the existing store and committed with a backup

Two commit modes:
- "aggregate": one file mapping code -> payload, committed once after the pass
- "per_entity": one file per code under a directory, committed after each code
"""
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .store import JsonStore, StoreError

logger = logging.getLogger(__name__)

COMMIT_AGGREGATE = "aggregate"
COMMIT_PER_ENTITY = "per_entity"
COMMIT_MODES = (COMMIT_AGGREGATE, COMMIT_PER_ENTITY)


@dataclass
class EntityResult:
    """Outcome of processing one stock code."""
    code: str
    payload: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class LoopReport:
    """Summary of one pass over the stock list."""
    succeeded: List[EntityResult] = field(default_factory=list)
    failed: List[EntityResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    committed: bool = False
    commit_error: Optional[StoreError] = None

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def results(self) -> Dict[str, Dict[str, Any]]:
        return {r.code: r.payload for r in self.succeeded}


def unique_codes(codes: Iterable[str]) -> List[str]:
    """Drop duplicate codes, keeping first-seen order."""
    seen = set()
    result = []
    for code in codes:
        if code in seen:
            continue
        seen.add(code)
        result.append(code)
    return result


class StockLoopRunner:
    """Runs a per-code processing function and persists what succeeded."""

    def __init__(
        self,
        process: Callable[[str], Dict[str, Any]],
        store: JsonStore,
        target: Path,
        delay_seconds: float = 3.0,
        skip_existing: bool = False,
        commit_mode: str = COMMIT_AGGREGATE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize runner.

        Args:
            process: Callable returning the payload for a code; raising marks
                the code as failed
            store: Store used to read prior results and commit new ones
            target: Store file (aggregate mode) or directory (per_entity mode)
            delay_seconds: Fixed wait between two processed codes
            skip_existing: Skip codes that already have a stored result
            commit_mode: "aggregate" or "per_entity"
            sleep: Blocking wait function (time.sleep)
        """
        if commit_mode not in COMMIT_MODES:
            raise ValueError(f"Unknown commit mode {commit_mode!r}, expected one of {COMMIT_MODES}")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self.process = process
        self.store = store
        self.target = Path(target)
        self.delay_seconds = delay_seconds
        self.skip_existing = skip_existing
        self.commit_mode = commit_mode
        self.sleep = sleep

    def entity_path(self, code: str) -> Path:
        """Store file for one code in per_entity mode."""
        return self.target / code

    def _already_collected(self, code: str, prior: Dict[str, Any]) -> bool:
        if self.commit_mode == COMMIT_PER_ENTITY:
            try:
                return bool(self.store.load(self.entity_path(code), missing_ok=True))
            except StoreError as e:
                logger.warning(f"Stored data for {code} unreadable, collecting again: {e}")
                return False
        return bool(prior.get(code))

    def run_one(self, code: str) -> EntityResult:
        """Process a single code inside its failure boundary."""
        try:
            payload = self.process(code)
        except Exception as e:
            logger.error(f"Failed to process stock {code}: {e}")
            logger.debug("Failure detail", exc_info=True)
            return EntityResult(code=code, error=e)
        return EntityResult(code=code, payload=payload)

    def _log_counts(self, total: int, report: LoopReport) -> None:
        logger.info(
            f"Processed {total} stocks: {report.succeeded_count} succeeded, "
            f"{report.failed_count} failed, {len(report.skipped)} skipped"
        )

    def _commit_failed(self, total: int, report: LoopReport, error: StoreError) -> StoreError:
        report.committed = False
        report.commit_error = error
        error.report = report
        self._log_counts(total, report)
        logger.error(f"Commit to {self.target} failed: {error}")
        return error

    def run(self, codes: Iterable[str], progress: Optional[Callable[[int, int, EntityResult], None]] = None) -> LoopReport:
        """
        Process every code in order and persist the successful results.

        Args:
            codes: Stock codes to process (duplicates dropped)
            progress: Optional callback(index, total, result) after each code

        Returns:
            LoopReport with succeeded/failed/skipped codes and committed=True

        Raises:
            StoreError: Prior aggregate unreadable, or the backup/write failed.
                The exception's `report` attribute holds the partial
                LoopReport (committed=False, commit_error set); in
                per_entity mode the loop stops at the failing code.
        """
        codes = unique_codes(codes)
        total = len(codes)
        report = LoopReport()

        # Aggregate mode reads the prior store up front so earlier runs are kept
        prior = {}
        if self.commit_mode == COMMIT_AGGREGATE:
            try:
                prior = self.store.load(self.target, missing_ok=True)
            except StoreError as e:
                raise self._commit_failed(total, report, e)

        processed_any = False
        for i, code in enumerate(codes, 1):
            if self.skip_existing and self._already_collected(code, prior):
                logger.debug(f"Stock {code} already collected, skipping")
                report.skipped.append(code)
                continue

            if processed_any and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)
            processed_any = True

            result = self.run_one(code)
            if result.ok and self.commit_mode == COMMIT_PER_ENTITY:
                try:
                    self.store.commit(self.entity_path(code), result.payload)
                except StoreError as e:
                    report.failed.append(EntityResult(code=code, error=e))
                    raise self._commit_failed(total, report, e)

            if result.ok:
                report.succeeded.append(result)
            else:
                report.failed.append(result)

            if progress:
                progress(i, total, result)

        if self.commit_mode == COMMIT_AGGREGATE:
            merged = dict(prior)
            merged.update(report.results)
            try:
                self.store.commit(self.target, merged)
            except StoreError as e:
                raise self._commit_failed(total, report, e)
            logger.info(f"Committed {len(merged)} stocks to {self.target}")

        report.committed = True
        self._log_counts(total, report)
        return report
