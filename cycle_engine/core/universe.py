"""Static stock universe and sector classification."""
from typing import Dict, Iterable, List

# Default universe scanned by the technical scoring strategy
DEFAULT_STOCK_UNIVERSE: List[str] = [
    "AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA", "NVDA", "JPM",
    "V", "MA", "UNH", "HD", "DIS", "NFLX", "ADBE", "CRM", "PYPL",
    "INTC", "AMD", "CSCO", "ORCL", "IBM", "QCOM", "TXN", "AVGO",
    "BA", "GE", "CAT", "MMM", "HON", "UPS", "FDX",
    "WMT", "TGT", "COST", "NKE", "SBUX", "MCD",
    "JNJ", "PFE", "ABBV", "TMO", "ABT", "LLY", "MRK",
    "XOM", "CVX", "COP", "SLB",
]

# Sector preference -> symbols (lower-case keys as stored on StrategyConfig)
SECTOR_UNIVERSE: Dict[str, List[str]] = {
    "technology": [
        "AAPL", "MSFT", "GOOGL", "META", "NVDA", "ADBE", "CRM", "INTC",
        "AMD", "CSCO", "ORCL", "IBM", "QCOM", "TXN", "AVGO",
    ],
    "finance": ["JPM", "V", "MA", "PYPL"],
    "healthcare": ["UNH", "JNJ", "PFE", "ABBV", "TMO", "ABT", "LLY", "MRK"],
    "consumer": ["AMZN", "WMT", "TGT", "COST", "NKE", "SBUX", "MCD", "HD", "DIS", "NFLX"],
    "industrial": ["BA", "GE", "CAT", "MMM", "HON", "UPS", "FDX"],
    "energy": ["XOM", "CVX", "COP", "SLB"],
    "automotive": ["TSLA"],
}

# Symbol -> reporting sector used for concentration and correlation
SECTOR_MAPPING: Dict[str, str] = {
    "AAPL": "Technology",
    "MSFT": "Technology",
    "GOOGL": "Technology",
    "GOOG": "Technology",
    "AMZN": "Consumer Cyclical",
    "META": "Technology",
    "TSLA": "Consumer Cyclical",
    "NVDA": "Technology",
    "JPM": "Financial Services",
    "V": "Financial Services",
    "MA": "Financial Services",
    "JNJ": "Healthcare",
    "UNH": "Healthcare",
    "PFE": "Healthcare",
    "XOM": "Energy",
    "CVX": "Energy",
    "WMT": "Consumer Defensive",
    "PG": "Consumer Defensive",
    "KO": "Consumer Defensive",
    "DIS": "Communication Services",
    "NFLX": "Communication Services",
}

UNKNOWN_SECTOR = "Other"


def sector_for(symbol: str) -> str:
    return SECTOR_MAPPING.get(symbol.upper(), UNKNOWN_SECTOR)


def tradeable_stocks(sector_preferences: Iterable[str]) -> List[str]:
    """Default universe narrowed to the preferred sectors.

    Unknown sectors are ignored; when nothing matches, the whole default
    universe is returned.
    """
    allowed = set()
    for sector in sector_preferences or []:
        allowed.update(SECTOR_UNIVERSE.get(sector.lower(), []))
    if not allowed:
        return list(DEFAULT_STOCK_UNIVERSE)
    return [s for s in DEFAULT_STOCK_UNIVERSE if s in allowed]
