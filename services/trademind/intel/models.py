# services/trademind/intel/models.py
"""Data models for the TradeMind journal service.

Storage rows use snake_case columns; the JSON handed to the front end uses
the camelCase field names the views expect. Each model owns both mappings.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

import jwt


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


class AssetType(str, Enum):
    STOCK = "STOCK"
    OPTION = "OPTION"
    INDEX = "INDEX"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class MarketType(str, Enum):
    INTRADAY = "INTRADAY"
    SWING = "SWING"
    POSITIONAL = "POSITIONAL"


class Emotion(str, Enum):
    CALM = "CALM"
    ANXIOUS = "ANXIOUS"
    GREEDY = "GREEDY"
    FEARFUL = "FEARFUL"
    CONFIDENT = "CONFIDENT"
    REVENGE = "REVENGE"


class AdminAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


COMMON_MISTAKES = [
    "Overtrading",
    "Revenge trading",
    "No stop loss",
    "Early exit",
    "Late entry",
    "Emotional trade",
    "News based trade",
    "Breaking rules",
]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_number(value: Any) -> float:
    """Form fields arrive as numbers or numeric strings; blank means 0."""
    if value is None or value == '':
        return 0.0
    if isinstance(value, bool):
        raise TypeError(f"not a number: {value!r}")
    return float(value)


# ==================== Accounts ====================

@dataclass
class PaymentDetails:
    """Proof of payment attached to a profile (stored as JSON, camelCase keys)."""
    transaction_id: str
    amount: float
    date: str
    screenshot_url: str
    rejection_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional['PaymentDetails']:
        if not d:
            return None
        return cls(
            transaction_id=d.get('transactionId', ''),
            amount=d.get('amount', 0),
            date=d.get('date', ''),
            screenshot_url=d.get('screenshotUrl', ''),
            rejection_reason=d.get('rejectionReason'),
        )

    def to_dict(self) -> dict:
        d = {
            'transactionId': self.transaction_id,
            'amount': self.amount,
            'date': self.date,
            'screenshotUrl': self.screenshot_url,
        }
        if self.rejection_reason is not None:
            d['rejectionReason'] = self.rejection_reason
        return d


@dataclass
class RegistrationDetails:
    """Answers captured on the second signup step."""
    mobile: str
    trading_experience: str
    preferred_market: str
    capital_size: str

    @classmethod
    def from_row(cls, row: Optional[dict]) -> Optional['RegistrationDetails']:
        if not row:
            return None
        return cls(
            mobile=row.get('mobile'),
            trading_experience=row.get('trading_experience'),
            preferred_market=row.get('preferred_market'),
            capital_size=row.get('capital_size'),
        )

    def to_row(self, user_id: str) -> dict:
        return {
            'user_id': user_id,
            'mobile': self.mobile,
            'trading_experience': self.trading_experience,
            'preferred_market': self.preferred_market,
            'capital_size': self.capital_size,
        }

    def to_dict(self) -> dict:
        return {
            'mobile': self.mobile,
            'tradingExperience': self.trading_experience,
            'preferredMarket': self.preferred_market,
            'capitalSize': self.capital_size,
        }


@dataclass
class User:
    """Application profile layered over the auth identity."""
    id: str
    name: str
    email: str
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.PENDING
    payment_details: Optional[PaymentDetails] = None
    registration_details: Optional[RegistrationDetails] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_row(cls, row: dict, registration: Optional[dict] = None) -> 'User':
        """Build from a `profiles` row plus its optional registration row."""
        return cls(
            id=row['id'],
            name=row.get('name') or '',
            email=row.get('email') or '',
            role=UserRole(row.get('role') or UserRole.USER.value),
            status=UserStatus(row.get('status') or UserStatus.PENDING.value),
            payment_details=PaymentDetails.from_dict(row.get('payment_details')),
            registration_details=RegistrationDetails.from_row(registration),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value,
            'status': self.status.value,
            'payment_details': self.payment_details.to_dict() if self.payment_details else None,
            'registration_details': (
                self.registration_details.to_dict() if self.registration_details else None
            ),
        }


# ==================== Auth session ====================

@dataclass
class AuthUser:
    """Identity as reported by the auth endpoints."""
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> 'AuthUser':
        return cls(
            id=d['id'],
            email=d.get('email'),
            user_metadata=d.get('user_metadata') or {},
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Session:
    """An authenticated session; only the backend client creates these."""
    access_token: str
    refresh_token: str
    expires_at: int
    user: AuthUser

    @classmethod
    def from_token_response(cls, d: dict) -> 'Session':
        """Build from a /token or /signup response carrying an access token.

        Falls back to the token's own `exp`/`sub` claims when the response
        omits `expires_at` or the user object.
        """
        token = d['access_token']
        claims = jwt.decode(token, options={"verify_signature": False})

        expires_at = d.get('expires_at')
        if not expires_at and d.get('expires_in'):
            expires_at = int(datetime.now(timezone.utc).timestamp()) + int(d['expires_in'])
        if not expires_at:
            expires_at = int(claims.get('exp', 0))

        user = d.get('user') or {'id': claims.get('sub'), 'email': claims.get('email')}
        return cls(
            access_token=token,
            refresh_token=d.get('refresh_token', ''),
            expires_at=int(expires_at),
            user=AuthUser.from_dict(user),
        )

    def is_expired(self, now: Optional[float] = None, margin: int = 10) -> bool:
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        return self.expires_at - margin <= now

    def to_dict(self) -> dict:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expires_at': self.expires_at,
            'user': self.user.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'Session':
        return cls(
            access_token=d['access_token'],
            refresh_token=d.get('refresh_token', ''),
            expires_at=int(d.get('expires_at', 0)),
            user=AuthUser.from_dict(d['user']),
        )


# ==================== Journal ====================

@dataclass
class Psychology:
    emotion_before: Emotion = Emotion.CALM
    emotion_during: Emotion = Emotion.CALM
    emotion_after: Emotion = Emotion.CALM
    confidence: int = 3
    stress: int = 1

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> 'Psychology':
        if not d:
            return cls()
        return cls(
            emotion_before=Emotion(d.get('emotionBefore', 'CALM')),
            emotion_during=Emotion(d.get('emotionDuring', 'CALM')),
            emotion_after=Emotion(d.get('emotionAfter', 'CALM')),
            confidence=d.get('confidence', 3),
            stress=d.get('stress', 1),
        )

    def to_dict(self) -> dict:
        return {
            'emotionBefore': self.emotion_before.value,
            'emotionDuring': self.emotion_during.value,
            'emotionAfter': self.emotion_after.value,
            'confidence': self.confidence,
            'stress': self.stress,
        }


@dataclass
class Trade:
    """A single journal entry."""
    user_id: str
    instrument: str
    side: Side
    qty: float
    entry_price: float
    exit_price: float
    timestamp: str

    asset_type: AssetType = AssetType.STOCK
    stop_loss: float = 0
    target: float = 0
    market_type: MarketType = MarketType.INTRADAY

    screenshot_url: Optional[str] = None
    notes: Optional[str] = None
    mistakes: List[str] = field(default_factory=list)
    psychology: Psychology = field(default_factory=Psychology)
    strategy_id: Optional[str] = None
    risk_reward: float = 0
    id: Optional[str] = None

    @property
    def pnl(self) -> float:
        direction = 1 if self.side == Side.BUY else -1
        return (self.exit_price - self.entry_price) * self.qty * direction

    @classmethod
    def from_row(cls, row: dict) -> 'Trade':
        return cls(
            id=row.get('id'),
            user_id=row.get('user_id'),
            asset_type=AssetType(row.get('asset_type') or 'STOCK'),
            instrument=row.get('instrument') or '',
            side=Side(row.get('side') or 'BUY'),
            qty=row.get('qty') or 0,
            entry_price=row.get('entry_price') or 0,
            exit_price=row.get('exit_price') or 0,
            stop_loss=row.get('stop_loss') or 0,
            target=row.get('target') or 0,
            timestamp=row.get('timestamp'),
            market_type=MarketType(row.get('market_type') or 'INTRADAY'),
            screenshot_url=row.get('screenshot_url'),
            notes=row.get('notes'),
            mistakes=row.get('mistakes') or [],
            psychology=Psychology.from_dict(row.get('psychology')),
            strategy_id=row.get('strategy_id'),
            risk_reward=row.get('risk_reward') or 0,
        )

    @classmethod
    def from_dict(cls, d: dict) -> 'Trade':
        """Build from the camelCase payload posted by the trade entry form."""
        return cls(
            id=d.get('id'),
            user_id=d.get('userId'),
            asset_type=AssetType(d.get('assetType', 'STOCK')),
            instrument=d.get('instrument', ''),
            side=Side(d.get('side', 'BUY')),
            qty=to_number(d.get('qty')),
            entry_price=to_number(d.get('entryPrice')),
            exit_price=to_number(d.get('exitPrice')),
            stop_loss=to_number(d.get('stopLoss')),
            target=to_number(d.get('target')),
            timestamp=d.get('timestamp') or utc_now_iso(),
            market_type=MarketType(d.get('marketType', 'INTRADAY')),
            screenshot_url=d.get('screenshotUrl'),
            notes=d.get('notes'),
            mistakes=list(d.get('mistakes') or []),
            psychology=Psychology.from_dict(d.get('psychology')),
            strategy_id=d.get('strategyId') or None,
            risk_reward=to_number(d.get('riskReward')),
        )

    def to_row(self) -> dict:
        return {
            'user_id': self.user_id,
            'asset_type': self.asset_type.value,
            'instrument': self.instrument,
            'side': self.side.value,
            'qty': self.qty,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'stop_loss': self.stop_loss,
            'target': self.target,
            'risk_reward': self.risk_reward,
            'timestamp': self.timestamp,
            'market_type': self.market_type.value,
            'notes': self.notes,
            'mistakes': self.mistakes,
            'psychology': self.psychology.to_dict(),
            'strategy_id': self.strategy_id,
            'screenshot_url': self.screenshot_url,
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'assetType': self.asset_type.value,
            'instrument': self.instrument,
            'side': self.side.value,
            'qty': self.qty,
            'entryPrice': self.entry_price,
            'exitPrice': self.exit_price,
            'stopLoss': self.stop_loss,
            'target': self.target,
            'timestamp': self.timestamp,
            'marketType': self.market_type.value,
            'screenshotUrl': self.screenshot_url,
            'notes': self.notes,
            'mistakes': self.mistakes,
            'psychology': self.psychology.to_dict(),
            'strategyId': self.strategy_id,
            'riskReward': self.risk_reward,
        }


@dataclass
class Strategy:
    user_id: str
    name: str
    entry_rules: str = ''
    exit_rules: str = ''
    timeframe: str = ''
    instrument: str = ''
    risk_rules: str = ''
    id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> 'Strategy':
        return cls(
            id=row.get('id'),
            user_id=row.get('user_id'),
            name=row.get('name') or '',
            entry_rules=row.get('entry_rules') or '',
            exit_rules=row.get('exit_rules') or '',
            timeframe=row.get('timeframe') or '',
            instrument=row.get('instrument') or '',
            risk_rules=row.get('risk_rules') or '',
        )

    @classmethod
    def from_dict(cls, d: dict) -> 'Strategy':
        return cls(
            id=d.get('id'),
            user_id=d.get('userId'),
            name=d.get('name', ''),
            entry_rules=d.get('entryRules', ''),
            exit_rules=d.get('exitRules', ''),
            timeframe=d.get('timeframe', ''),
            instrument=d.get('instrument', ''),
            risk_rules=d.get('riskRules', ''),
        )

    def to_row(self) -> dict:
        return {
            'user_id': self.user_id,
            'name': self.name,
            'entry_rules': self.entry_rules,
            'exit_rules': self.exit_rules,
            'timeframe': self.timeframe,
            'instrument': self.instrument,
            'risk_rules': self.risk_rules,
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'entryRules': self.entry_rules,
            'exitRules': self.exit_rules,
            'timeframe': self.timeframe,
            'instrument': self.instrument,
            'riskRules': self.risk_rules,
        }


@dataclass
class RiskRules:
    """Per-user limits (percentages of capital, trade count)."""
    max_risk_per_trade: float = 1
    max_daily_loss: float = 5
    max_trades_per_day: int = 3

    @classmethod
    def from_row(cls, row: Optional[dict]) -> 'RiskRules':
        if not row:
            return cls()
        return cls(
            max_risk_per_trade=row.get('max_risk_per_trade', 1),
            max_daily_loss=row.get('max_daily_loss', 5),
            max_trades_per_day=row.get('max_trades_per_day', 3),
        )

    def to_dict(self) -> dict:
        return asdict(self)
