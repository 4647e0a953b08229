"""
Named stock data stores.

Each store is a JSON file keyed by stock code, read and written through
JsonStore. Stores differ in how they treat a missing or corrupt file:

- stock basic info: missing is a first run ({}), corrupt is logged and read as {}
- basic finance: per-code lookup, missing is surfaced to the caller
- held stocks: missing is read as {}, corrupt is surfaced
- finance forecasts: missing and corrupt are both surfaced
"""
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .store import JsonStore, StoreDecodeError, StoreError, StoreNotFoundError

logger = logging.getLogger(__name__)


def _from_known_fields(cls, data: Dict[str, Any]):
    if not isinstance(data, dict):
        raise TypeError(f"expected an object, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class StockBasicInfo:
    """Listing-level data for one stock."""
    code: str
    name: str
    price: Optional[float] = None
    pe: Optional[float] = None
    pb: Optional[float] = None
    market_cap: Optional[float] = None
    circulating_market_cap: Optional[float] = None
    turnover_ratio: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "StockBasicInfo":
        return _from_known_fields(cls, data)


@dataclass
class HoldStockInfo:
    """A position in a held stock."""
    code: str
    name: str
    shares: int = 0
    cost_price: Optional[float] = None
    buy_date: Optional[str] = None
    notes: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HoldStockInfo":
        return _from_known_fields(cls, data)


@dataclass
class FinanceForecast:
    """A published earnings forecast (业绩预告)."""
    code: str
    name: str
    report_period: str
    forecast_type: str = ""
    summary: str = ""
    publish_date: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "FinanceForecast":
        return _from_known_fields(cls, data)


@dataclass
class StorageConfig:
    """File locations for every store."""
    data_dir: Path
    stock_basic_info_file: Path
    basic_finance_dir: Path
    basic_finance_file: Path
    hold_stock_info_file: Path
    finance_forecast_file: Path

    @staticmethod
    def from_dict(raw: Optional[dict], data_dir: Optional[str] = None) -> "StorageConfig":
        """
        Build storage paths from the `storage` config section.

        Relative file names are resolved under data_dir. The STOCK_DATA_DIR
        environment variable overrides the configured data_dir; an explicit
        data_dir argument overrides both.
        """
        raw = raw or {}
        base = Path(data_dir or os.environ.get("STOCK_DATA_DIR") or raw.get("data_dir", "./data"))

        def under_base(key: str, default: str) -> Path:
            p = Path(raw.get(key, default))
            return p if p.is_absolute() else base / p

        return StorageConfig(
            data_dir=base,
            stock_basic_info_file=under_base("stock_basic_info_file", "stock_basic_info.json"),
            basic_finance_dir=under_base("basic_finance_dir", "basic_finance"),
            basic_finance_file=under_base("basic_finance_file", "basic_finance.json"),
            hold_stock_info_file=under_base("hold_stock_info_file", "hold_stock_info.json"),
            finance_forecast_file=under_base("finance_forecast_file", "finance_forecast.json"),
        )


class StockDataService:
    """Reads and writes the named stock data stores."""

    def __init__(self, storage: StorageConfig, store: Optional[JsonStore] = None):
        self.storage = storage
        self.store = store or JsonStore()

    def get_all_stock_basic_info(self) -> Dict[str, StockBasicInfo]:
        """
        Read basic info for all stocks.

        Returns {} when the file does not exist yet (stock list never
        downloaded) or cannot be parsed.
        """
        path = self.storage.stock_basic_info_file
        if not path.exists():
            logger.info(f"Stock basic info file {path} does not exist, basic data has not been downloaded yet")
            return {}
        try:
            return self.store.load(path, missing_ok=True, record_type=StockBasicInfo)
        except StoreError as e:
            logger.error(f"Failed to read stock basic info from {path}: {e}")
            return {}

    def write_stock_basic_info(self, infos: Dict[str, StockBasicInfo]) -> None:
        self.backup_and_write_new(self.storage.stock_basic_info_file, infos)

    def get_basic_finance_data(self, code: str, per_entity: bool = False) -> Dict[str, Dict[str, str]]:
        """
        Get a stock's finance data: report period -> metric -> value.

        Report periods look like "2015年年报", "2015年三季报", "2015年中报",
        "2015年一季报". Metrics are revenue/profit and their
        *_yoy_growth / *_qoq_growth fields.

        Args:
            code: Stock code
            per_entity: Read <basic_finance_dir>/<code> instead of the
                aggregate basic finance file

        Raises:
            StoreNotFoundError: No finance data stored for the code
            StoreDecodeError: Stored data is malformed
        """
        if per_entity:
            return self.store.load(self.storage.basic_finance_dir / code, missing_ok=False)

        path = self.storage.basic_finance_file
        finance = self.store.load(path, missing_ok=False)
        if code not in finance:
            raise StoreNotFoundError(f"No basic finance data for {code} in {path}", path)
        return finance[code]

    def load_hold_stock_info(self) -> Dict[str, HoldStockInfo]:
        """
        Read held stocks.

        A missing file means nothing is held yet; a malformed file is an error.
        """
        path = self.storage.hold_stock_info_file
        try:
            return self.store.load(path, missing_ok=False, record_type=HoldStockInfo)
        except StoreNotFoundError:
            logger.warning(f"Hold stock info file does not exist: {path}")
            return {}
        except StoreDecodeError:
            logger.error(f"Failed to read held stock info from {path}")
            raise

    def write_hold_stock_info(self, holdings: Dict[str, HoldStockInfo]) -> None:
        """Write or update held stocks."""
        try:
            self.backup_and_write_new(self.storage.hold_stock_info_file, holdings)
        except StoreError:
            logger.error(f"Failed to write held stock info to {self.storage.hold_stock_info_file}")
            raise

    def backup_and_write_new(self, path, content: Dict[str, Any]) -> None:
        """Back up the original file and write the new content."""
        self.store.commit(path, content)

    def write_finance_forecast(self, forecasts: Dict[str, FinanceForecast]) -> None:
        self.backup_and_write_new(self.storage.finance_forecast_file, forecasts)

    def load_finance_forecast(self) -> Dict[str, FinanceForecast]:
        """
        Read finance forecasts.

        Raises:
            StoreNotFoundError: Forecasts were never written
        """
        return self.store.load(self.storage.finance_forecast_file, missing_ok=False, record_type=FinanceForecast)
