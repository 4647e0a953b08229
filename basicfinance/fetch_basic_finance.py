#!/usr/bin/env python3
"""
Basic Finance Collector - per-stock revenue and net profit growth for A-shares.

For every stock, downloads the full profit statement history from Sina Finance
and derives, per report period (年报 / 一季报 / 中报 / 三季报):
- Revenue and net profit
- Year-over-year growth (same report, previous year)
- Quarter-over-quarter growth (isolated quarter vs. preceding quarter)

Stocks are processed one at a time with a fixed delay between them. A stock
that fails is logged and left out; the rest of the run continues. Results are
merged into the existing store, and the previous file is kept as <file>_backup.

Stock list (first non-empty wins):
- --tickers on the command line
- Codes in the stock basic info file
- universe.fallback_codes in config.yml

Usage:
    python -m basicfinance.fetch_basic_finance                       # All known stocks
    python -m basicfinance.fetch_basic_finance --tickers 600000,000001
    python -m basicfinance.fetch_basic_finance --skip-existing --delay 5
    python -m basicfinance.fetch_basic_finance --mode per_entity --data-dir ./data
"""
import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytz
import yaml
from dotenv import load_dotenv

from shared.loop_runner import COMMIT_AGGREGATE, COMMIT_MODES, EntityResult, LoopReport, StockLoopRunner
from shared.stock_data import StockDataService, StorageConfig
from shared.store import JsonStore, StoreError

from .finance_tools import DEFAULT_CONCEPTS, build_finance_record
from .sina_client import DEFAULT_STATEMENT_URL, DEFAULT_USER_AGENT, SinaFinanceClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yml"
CHINA_TZ = pytz.timezone("Asia/Shanghai")

EXIT_OK = 0
EXIT_COMMIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class Config:
    storage: StorageConfig
    delay_seconds: float = 3.0
    skip_existing: bool = False
    commit_mode: str = COMMIT_AGGREGATE
    statement_url: str = DEFAULT_STATEMENT_URL
    statement_kind: str = "ProfitStatement"
    timeout_seconds: float = 15
    user_agent: str = DEFAULT_USER_AGENT
    concepts: Dict[str, List[str]] = field(default_factory=lambda: dict(DEFAULT_CONCEPTS))
    fallback_codes: List[str] = field(default_factory=list)
    indent: int = 2

    @staticmethod
    def from_dict(raw: Optional[dict], data_dir: Optional[str] = None) -> "Config":
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"config must be a mapping, got {type(raw).__name__}")
        loop = _section(raw, "loop")
        sina = _section(raw, "sina")
        universe = _section(raw, "universe")
        output = _section(raw, "output")
        storage = _section(raw, "storage")

        commit_mode = loop.get("commit_mode", COMMIT_AGGREGATE)
        if commit_mode not in COMMIT_MODES:
            raise ValueError(f"loop.commit_mode must be one of {COMMIT_MODES}, got {commit_mode!r}")

        delay_seconds = float(loop.get("delay_seconds", 3))
        if delay_seconds < 0:
            raise ValueError(f"loop.delay_seconds must not be negative, got {delay_seconds}")

        concepts = _section(raw, "concepts") or DEFAULT_CONCEPTS
        for metric, items in concepts.items():
            if not isinstance(items, list) or not items:
                raise ValueError(f"concepts.{metric} must be a non-empty list of line item names")

        return Config(
            storage=StorageConfig.from_dict(storage, data_dir=data_dir),
            delay_seconds=delay_seconds,
            skip_existing=bool(loop.get("skip_existing", False)),
            commit_mode=commit_mode,
            statement_url=sina.get("statement_url", DEFAULT_STATEMENT_URL),
            statement_kind=sina.get("statement_kind", "ProfitStatement"),
            timeout_seconds=float(sina.get("timeout_seconds", 15)),
            user_agent=sina.get("user_agent", DEFAULT_USER_AGENT),
            concepts={metric: [str(i) for i in items] for metric, items in concepts.items()},
            fallback_codes=[str(c) for c in universe.get("fallback_codes", []) or []],
            indent=int(output.get("indent", 2)),
        )

    @staticmethod
    def from_yaml(path, data_dir: Optional[str] = None) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        return Config.from_dict(raw, data_dir=data_dir)

    @property
    def target(self) -> Path:
        """Where results go: the aggregate file or the per-stock directory."""
        if self.commit_mode == COMMIT_AGGREGATE:
            return self.storage.basic_finance_file
        return self.storage.basic_finance_dir


def _section(raw: dict, name: str) -> dict:
    """Return a config section as a dict; an absent or empty section is {}."""
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


# ============================================================================
# Collection
# ============================================================================

def select_codes(cli_codes: Optional[str], data_service: StockDataService, config: Config) -> List[str]:
    """Pick the stock list: command line, then basic info store, then config."""
    if cli_codes:
        return [c.strip() for c in cli_codes.split(",") if c.strip()]

    basic_info = data_service.get_all_stock_basic_info()
    if basic_info:
        return sorted(basic_info)

    logger.warning("No stock basic info available, using fallback codes from config")
    return list(config.fallback_codes)


def make_processor(
    client: SinaFinanceClient,
    concepts: Dict[str, List[str]],
    statement_kind: str = "ProfitStatement",
) -> Callable[[str], Dict[str, Dict[str, str]]]:
    """Build the per-stock function: fetch statement, derive finance record."""

    def process(code: str) -> Dict[str, Dict[str, str]]:
        data = client.fetch_raw_statement(code, statement_kind)
        return build_finance_record(data, concepts)

    return process


def print_progress(index: int, total: int, result: EntityResult) -> None:
    if result.ok:
        print(f"[{index}/{total}] {result.code}... OK ({len(result.payload)} periods)", file=sys.stderr)
    else:
        print(f"[{index}/{total}] {result.code}... error: {result.error}", file=sys.stderr)


def print_summary(report: LoopReport, total: int) -> None:
    print(f"Succeeded: {report.succeeded_count}/{total}", file=sys.stderr)
    print(f"Failed: {report.failed_count}", file=sys.stderr)
    if report.failed:
        failed = [r.code for r in report.failed]
        print(f"Failed stocks: {', '.join(failed[:10])}{'...' if len(failed) > 10 else ''}", file=sys.stderr)
    print(f"Skipped (already collected): {len(report.skipped)}", file=sys.stderr)


# ============================================================================
# Main
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Collect revenue and net profit growth per report period for A-share stocks."
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yml")
    parser.add_argument("--tickers", type=str, help="Comma-separated list of stock codes")
    parser.add_argument("--skip-existing", action="store_true", help="Skip stocks that already have finance data")
    parser.add_argument("--delay", type=float, default=None, help="Seconds to wait between stocks")
    parser.add_argument("--mode", choices=COMMIT_MODES, default=None, help="Commit mode")
    parser.add_argument("--data-dir", type=str, default=None, help="Base directory for store files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    load_dotenv()

    config_path = Path(args.config) if args.config else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        print(f"Config not found: {config_path}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    try:
        config = Config.from_yaml(config_path, data_dir=args.data_dir)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        print(f"Invalid config {config_path}: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.skip_existing:
        config.skip_existing = True
    if args.delay is not None:
        if args.delay < 0:
            print(f"--delay must not be negative, got {args.delay}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        config.delay_seconds = args.delay
    if args.mode:
        config.commit_mode = args.mode

    store = JsonStore(indent=config.indent)
    data_service = StockDataService(config.storage, store)

    codes = select_codes(args.tickers, data_service, config)
    if not codes:
        print("No stocks to process", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    client = SinaFinanceClient(
        statement_url=config.statement_url,
        timeout=config.timeout_seconds,
        user_agent=config.user_agent,
    )
    runner = StockLoopRunner(
        process=make_processor(client, config.concepts, config.statement_kind),
        store=store,
        target=config.target,
        delay_seconds=config.delay_seconds,
        skip_existing=config.skip_existing,
        commit_mode=config.commit_mode,
    )

    started_at = datetime.now(CHINA_TZ)
    print(f"\n{'='*60}", file=sys.stderr)
    print("Basic Finance Collector", file=sys.stderr)
    print(f"{'='*60}", file=sys.stderr)
    print(f"Started: {started_at.strftime('%Y-%m-%d %H:%M:%S %Z')}", file=sys.stderr)
    print(f"Stocks to process: {len(codes)}", file=sys.stderr)
    print(f"Delay between stocks: {config.delay_seconds}s", file=sys.stderr)
    print(f"Commit mode: {config.commit_mode} -> {config.target}", file=sys.stderr)
    print(f"{'='*60}\n", file=sys.stderr)

    try:
        report = runner.run(codes, progress=print_progress)
    except StoreError as e:
        logger.error(f"Persisting finance data failed: {e}")
        print(f"\n{'='*60}", file=sys.stderr)
        print("Collection Aborted", file=sys.stderr)
        print(f"{'='*60}", file=sys.stderr)
        partial = getattr(e, "report", None)
        if partial is not None:
            print_summary(partial, len(codes))
        print(f"✗ Commit failed: {e}", file=sys.stderr)
        return EXIT_COMMIT_FAILED

    print(f"\n{'='*60}", file=sys.stderr)
    print("Collection Complete", file=sys.stderr)
    print(f"{'='*60}", file=sys.stderr)
    print_summary(report, len(codes))
    print(f"✓ Wrote output to {config.target}", file=sys.stderr)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
