"""
Soul token ledger tests.
"""
import pytest

from ryvynn.core.database import session_scope
from ryvynn.core.errors import ValidationError


@pytest.fixture
def tokens(services):
    return services.tokens


def test_award_updates_balance_and_ledger(tokens, make_user, session_factory):
    make_user("u_tok")
    with session_scope(session_factory) as session:
        assert tokens.award(session, "u_tok", 3, "truth_reading", reference="post:1") == 3
        assert tokens.award(session, "u_tok", 10, "truth_sharing", reference="post:2") == 13

    balance = tokens.get_balance("u_tok")
    assert balance.total_earned == 13
    assert balance.current_balance == 13
    assert balance.earned_from_truth_reading == 3
    assert balance.earned_from_truth_sharing == 10

    ledger = tokens.get_ledger("u_tok")
    assert [entry.amount for entry in ledger] == [10, 3]
    assert ledger[0].balance_after == 13
    assert ledger[1].reference == "post:1"


def test_award_rolls_back_with_caller(tokens, make_user, session_factory):
    make_user("u_tok")
    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as session:
            tokens.award(session, "u_tok", 5, "truth_reading")
            raise RuntimeError("boom")

    assert tokens.get_balance("u_tok").current_balance == 0
    assert tokens.get_ledger("u_tok") == []


@pytest.mark.parametrize("amount, source", [(0, "truth_reading"), (-2, "truth_sharing"), (1, "gift")])
def test_award_rejects_bad_input(tokens, session_factory, amount, source):
    with session_scope(session_factory) as session:
        with pytest.raises(ValidationError):
            tokens.award(session, "u_tok", amount, source)


def test_unknown_user_has_zero_balance(tokens):
    balance = tokens.get_balance("nobody")
    assert balance.current_balance == 0
    assert balance.total_earned == 0


def test_ledger_limit_is_clamped(tokens, make_user, session_factory):
    make_user("u_many")
    with session_scope(session_factory) as session:
        for _ in range(3):
            tokens.award(session, "u_many", 1, "truth_reading")

    assert len(tokens.get_ledger("u_many", limit=0)) == 1
    assert len(tokens.get_ledger("u_many", limit=1000)) == 3
