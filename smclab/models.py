"""
Data models for Smart Money Concepts analysis and backtesting
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Candle:
    """OHLC(V) price bar; time is a unix timestamp in seconds"""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


@dataclass
class SwingPoint:
    """Represents a 3-bar fractal pivot (swing high/low)"""
    index: int
    price: float
    time: int
    kind: str  # 'high' or 'low'
    grabbed: bool = False
    broken: bool = False


@dataclass
class LiquidityGrab:
    """First bar that trades through a swing point"""
    index: int
    time: int
    swing: SwingPoint
    kind: str  # 'BSL' (above a swing high) or 'SSL' (below a swing low)
    bar_high: float = 0.0
    bar_low: float = 0.0


@dataclass
class StructureEvent:
    """Break of Structure or Change of Character"""
    index: int
    time: int
    price: float
    direction: str  # 'up' or 'down'
    label: str  # 'BOS' or 'CHoCH'
    swing_index: int


@dataclass
class POI:
    """Point of interest: Order Block, Fair Value Gap or Breaker Block"""
    poi_type: str  # 'OB', 'FVG' or 'Breaker'
    bias: str  # 'bullish' or 'bearish'
    top: float
    bottom: float
    origin_index: int
    origin_time: int
    is_mitigated: bool = False
    mitigation_index: Optional[int] = None
    mitigation_time: Optional[int] = None

    @property
    def direction(self) -> str:
        return 'LONG' if self.bias == 'bullish' else 'SHORT'

    def overlaps(self, candle: Candle) -> bool:
        return candle.low <= self.top and candle.high >= self.bottom

    def is_active_at(self, time: int) -> bool:
        """True when the zone exists at `time` and has not been mitigated yet"""
        if self.origin_time > time:
            return False
        return self.mitigation_time is None or self.mitigation_time > time


@dataclass
class AnalysisBundle:
    """Everything the structure analyzer found in one candle series"""
    swing_highs: List[SwingPoint] = field(default_factory=list)
    swing_lows: List[SwingPoint] = field(default_factory=list)
    liquidity_grabs: List[LiquidityGrab] = field(default_factory=list)
    bos_events: List[StructureEvent] = field(default_factory=list)
    choch_events: List[StructureEvent] = field(default_factory=list)
    order_blocks: List[POI] = field(default_factory=list)
    fvgs: List[POI] = field(default_factory=list)
    breaker_blocks: List[POI] = field(default_factory=list)
    ema: List[Optional[float]] = field(default_factory=list)
    atr: List[Optional[float]] = field(default_factory=list)
    ema_period: Optional[int] = None
    atr_period: Optional[int] = None
    times: List[int] = field(default_factory=list)

    @property
    def swing_points(self) -> List[SwingPoint]:
        return sorted(self.swing_highs + self.swing_lows, key=lambda s: (s.index, s.kind))

    def pois(self) -> List[POI]:
        return self.order_blocks + self.fvgs + self.breaker_blocks

    def structure_events_at(self, index: int) -> List[StructureEvent]:
        return [e for e in self.choch_events + self.bos_events if e.index == index]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Setup:
    """Pending trade plan waiting for price to reach its POI"""
    direction: str  # 'LONG' or 'SHORT'
    poi: POI
    protection_price: float
    creation_index: int
    expiry_index: int
    setup_type: str


@dataclass
class ClosedTrade:
    """One realized exit leg of a trade"""
    direction: str
    entry_price: float
    entry_time: int
    exit_price: float
    exit_time: int
    exit_reason: str  # 'TP1', 'TP2', 'StopLoss', 'Breakeven', 'StopLoss (Same Bar)'
    size: float
    initial_size: float
    pnl: float
    setup_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Trade:
    """Open position; size shrinks and stop may move to breakeven after TP1"""
    direction: str
    entry_price: float
    entry_time: int
    entry_index: int
    stop_loss: float
    take_profit1: float
    take_profit2: float
    setup_type: str
    size: float = 0.0
    initial_size: float = 0.0
    tp1_hit: bool = False
    exit_records: List[ClosedTrade] = field(default_factory=list)

    @property
    def is_long(self) -> bool:
        return self.direction == 'LONG'

    @property
    def risk_per_unit(self) -> float:
        return abs(self.entry_price - self.stop_loss)


@dataclass
class ImmediateExit:
    """Trade opened and stopped out within the same bar"""
    direction: str
    entry_price: float
    entry_time: int
    stop_loss: float
    take_profit1: float
    take_profit2: float
    exit_price: float
    setup_type: str
    exit_reason: str = 'StopLoss (Same Bar)'


@dataclass
class BacktestResult:
    """Equity curve summary and trade log of one backtest"""
    starting_equity: float
    final_equity: float
    net_pnl: float
    pnl_percent: float
    win_rate: float
    total_trades: int
    trades: List[ClosedTrade] = field(default_factory=list)
    open_trade: Optional[Trade] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'starting_equity': self.starting_equity,
            'final_equity': self.final_equity,
            'net_pnl': self.net_pnl,
            'pnl_percent': self.pnl_percent,
            'win_rate': self.win_rate,
            'total_trades': self.total_trades,
            'trades': [t.to_dict() for t in self.trades],
            'open_trade': asdict(self.open_trade) if self.open_trade else None
        }


@dataclass
class TrialResult:
    """Score of one parameter combination"""
    params: Dict[str, float]
    backtest: BacktestResult
    score: float
    combination_index: int


@dataclass
class OptimizationRun:
    """Outcome of a full optimization run"""
    results: List[TrialResult]
    best_result: Optional[TrialResult]
    total_combinations: int
    target: str
    param_ranges: Dict[str, Any]
    timestamp: str
    failed_combinations: int = 0
    cancelled: bool = False
