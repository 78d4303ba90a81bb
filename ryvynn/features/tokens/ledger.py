"""
Soul token ledger and balances.

Manages reward accounting with:
- Append-only ledger (one row per award)
- Denormalized per-user balance row
- Per-source totals (truth reading / truth sharing)

Soul tokens are an in-app reward only; they carry no monetary value.
"""
from datetime import datetime, timezone
from typing import List, Optional, Literal
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session, sessionmaker

from ryvynn.core.database import (
    insert_if_absent,
    session_or_scope,
    soul_token_balances,
    soul_token_ledger,
)
from ryvynn.core.errors import ValidationError


logger = logging.getLogger("ryvynn")

TokenSource = Literal["truth_reading", "truth_sharing"]

SOURCE_COLUMNS = {
    "truth_reading": "earned_from_truth_reading",
    "truth_sharing": "earned_from_truth_sharing",
}


class TokenBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    total_earned: int = 0
    current_balance: int = 0
    earned_from_truth_reading: int = 0
    earned_from_truth_sharing: int = 0


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    source: str
    amount: int
    balance_after: int
    reference: Optional[str] = None
    created_at: Optional[datetime] = None


class TokenLedger:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def award(
        self,
        session: Session,
        user_id: str,
        amount: int,
        source: TokenSource,
        reference: Optional[str] = None,
    ) -> int:
        """
        Credit tokens inside the caller's transaction.

        Returns:
            Balance after the award

        Raises:
            ValidationError: amount <= 0 or unknown source
        """
        if amount <= 0:
            raise ValidationError("Token award must be positive")
        if source not in SOURCE_COLUMNS:
            raise ValidationError(f"Unknown token source: {source}")

        insert_if_absent(session, soul_token_balances, dict(user_id=user_id))

        source_col = soul_token_balances.c[SOURCE_COLUMNS[source]]
        session.execute(
            update(soul_token_balances)
            .where(soul_token_balances.c.user_id == user_id)
            .values(
                {
                    soul_token_balances.c.total_earned: soul_token_balances.c.total_earned + amount,
                    soul_token_balances.c.current_balance: soul_token_balances.c.current_balance + amount,
                    source_col: source_col + amount,
                    soul_token_balances.c.updated_at: datetime.now(timezone.utc),
                }
            )
        )
        balance_after = session.execute(
            select(soul_token_balances.c.current_balance).where(soul_token_balances.c.user_id == user_id)
        ).scalar_one()

        session.execute(
            insert(soul_token_ledger).values(
                user_id=user_id,
                source=source,
                amount=amount,
                balance_after=balance_after,
                reference=reference,
                created_at=datetime.now(timezone.utc),
            )
        )

        logger.info(
            "[tokens] EARN",
            extra={"user_id": user_id, "source": source, "amount": amount, "balance_after": balance_after},
        )
        return balance_after

    def get_balance(self, user_id: str, session: Optional[Session] = None) -> TokenBalance:
        with session_or_scope(self.session_factory, session) as s:
            row = s.execute(
                select(soul_token_balances).where(soul_token_balances.c.user_id == user_id)
            ).first()
        if not row:
            return TokenBalance(user_id=user_id)
        return TokenBalance(
            user_id=row.user_id,
            total_earned=row.total_earned,
            current_balance=row.current_balance,
            earned_from_truth_reading=row.earned_from_truth_reading,
            earned_from_truth_sharing=row.earned_from_truth_sharing,
        )

    def get_ledger(self, user_id: str, limit: int = 50) -> List[LedgerEntry]:
        limit = max(1, min(limit, 200))
        with session_or_scope(self.session_factory) as session:
            rows = session.execute(
                select(soul_token_ledger)
                .where(soul_token_ledger.c.user_id == user_id)
                .order_by(soul_token_ledger.c.id.desc())
                .limit(limit)
            ).all()
        return [
            LedgerEntry(
                user_id=row.user_id,
                source=row.source,
                amount=row.amount,
                balance_after=row.balance_after,
                reference=row.reference,
                created_at=row.created_at,
            )
            for row in rows
        ]
