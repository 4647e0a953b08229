"""
Sina Finance statement client.

Downloads full-history financial statements for an A-share stock from Sina's
statement export (a tab-separated GBK table: first row holds report dates,
first column holds line item names) and returns them as
{line item: {report date: value}}.
"""
import logging
from io import StringIO
from typing import Dict, Optional

import pandas as pd
import requests

logger = logging.getLogger(__name__)

DEFAULT_STATEMENT_URL = (
    "http://money.finance.sina.com.cn/corp/go.php/"
    "vDOWN_{statement}/displaytype/4/stockid/{code}/ctrl/all.phtml"
)
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0 Safari/537.36"
)

STATEMENT_KINDS = ("ProfitStatement", "BalanceSheet", "CashFlow")


class FetchError(Exception):
    """Statement could not be downloaded or parsed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class SinaFinanceClient:
    """Client for Sina Finance statement downloads."""

    def __init__(
        self,
        statement_url: str = DEFAULT_STATEMENT_URL,
        timeout: float = 15,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Sina client.

        Args:
            statement_url: URL template with {statement} and {code} fields
            timeout: Request timeout in seconds
            user_agent: User-Agent header sent with every request
            session: Optional requests session (default: new session)
        """
        self.statement_url = statement_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def fetch_raw_statement(self, code: str, statement_kind: str = "ProfitStatement") -> Dict[str, Dict[str, float]]:
        """
        Fetch one statement for a stock.

        Args:
            code: Six-digit stock code (e.g. '600000')
            statement_kind: 'ProfitStatement', 'BalanceSheet' or 'CashFlow'

        Returns:
            {line item: {report date: value}}

        Raises:
            FetchError: Network error, non-200 response, or unparseable table
        """
        if statement_kind not in STATEMENT_KINDS:
            raise ValueError(f"Unknown statement kind {statement_kind!r}")

        url = self.statement_url.format(statement=statement_kind, code=code)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request for {code} {statement_kind} failed: {e}", code) from e

        if response.status_code != 200:
            raise FetchError(f"Sina returned HTTP {response.status_code} for {code} {statement_kind}", code)

        text = response.content.decode("gbk", errors="replace")
        data = parse_statement_table(text)
        if not data:
            raise FetchError(f"No statement data for {code} {statement_kind}", code)

        logger.debug(f"Fetched {statement_kind} for {code}: {len(data)} line items")
        return data


def parse_statement_table(text: str) -> Dict[str, Dict[str, float]]:
    """
    Parse Sina's tab-separated statement export.

    Cells that are blank or non-numeric ("--") are dropped; a line item
    appearing twice keeps its first row.

    Raises:
        FetchError: Table cannot be parsed
    """
    if not text or not text.strip():
        return {}

    try:
        df = pd.read_csv(StringIO(text), sep="\t", index_col=0, dtype=str, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise FetchError(f"Unparseable statement table: {e}") from e

    # Trailing tabs produce empty "Unnamed: n" columns
    df = df.loc[:, [not str(c).startswith("Unnamed") for c in df.columns]]
    df = df[df.index.notna()]
    df.index = df.index.astype(str).str.strip()
    df = df[~df.index.duplicated(keep="first")]

    data = {}
    for item, row in df.iterrows():
        cleaned = row.map(lambda v: v.replace(",", "") if isinstance(v, str) else v)
        values = pd.to_numeric(cleaned, errors="coerce").dropna()
        if values.empty:
            continue
        data[item] = {str(date).strip(): float(v) for date, v in values.items()}
    return data
