import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from fakes import make_session_factory

from app.core.errors import InsufficientCreditsError, ValidationError
from app.core.settings import settings
from app.models.credit_ledger import CreditTransaction
from app.services.credits_engine import (
    adjust_credits,
    ensure_customer,
    get_balance,
    insert_or_get_transaction,
    read_preferences,
)
from app.services.generation.billing import (
    CHARGE_REF_TYPE,
    REFUND_REF_TYPE,
    charge_generation,
    commit_type_for_me_success,
    ensure_enough_credits,
    preflight_type_for_me,
    refund_on_failure,
)

PASS_ID = "pass:user:u1"


class _DbTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()

    def tearDown(self):
        self.db.close()

    def balance(self) -> int:
        return get_balance(self.db, PASS_ID)["credits"]

    def ledger(self, ref_type: str | None = None) -> list[CreditTransaction]:
        q = self.db.query(CreditTransaction).filter(CreditTransaction.pass_id == PASS_ID)
        if ref_type:
            q = q.filter(CreditTransaction.ref_type == ref_type)
        return q.all()


class TestLedger(_DbTestCase):
    def test_unknown_customer_has_zero_balance(self):
        self.assertEqual(get_balance(self.db, "pass:user:nobody"), {"credits": 0, "expires_at": None})

    def test_free_credits_granted_once(self):
        with mock.patch.object(settings, "default_free_credits", 3):
            ensure_customer(self.db, PASS_ID, email="Someone@Example.com")
            ensure_customer(self.db, PASS_ID)
        self.assertEqual(self.balance(), 3)
        self.assertEqual(len(self.ledger("free_signup")), 1)
        self.assertIsNotNone(get_balance(self.db, PASS_ID)["expires_at"])

    def test_keyed_adjustment_applies_once(self):
        first = adjust_credits(self.db, PASS_ID, 5, ref_type="topup", ref_id="order-1")
        second = adjust_credits(self.db, PASS_ID, 5, ref_type="topup", ref_id="order-1")
        self.assertFalse(first["already_applied"])
        self.assertTrue(second["already_applied"])
        self.assertEqual(self.balance(), 5)
        rows = self.ledger("topup")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].status, "succeeded")
        self.assertEqual(rows[0].event_metadata["credits_after"], 5)

    def test_unkeyed_adjustments_always_apply(self):
        adjust_credits(self.db, PASS_ID, 2)
        adjust_credits(self.db, PASS_ID, 2)
        self.assertEqual(self.balance(), 4)

    def test_balance_never_goes_negative(self):
        adjust_credits(self.db, PASS_ID, 3)
        result = adjust_credits(self.db, PASS_ID, -10, reason="correction")
        self.assertEqual(result["credits_before"], 3)
        self.assertEqual(result["credits_after"], 0)
        self.assertEqual(self.balance(), 0)

    def test_expiry_only_moves_forward(self):
        now = datetime.now(timezone.utc)
        adjust_credits(self.db, PASS_ID, 5, event_time=now)
        expiry = get_balance(self.db, PASS_ID)["expires_at"]
        self.assertAlmostEqual(expiry.timestamp(), (now + timedelta(days=30)).timestamp(), delta=2)

        adjust_credits(self.db, PASS_ID, 1, event_time=now - timedelta(days=10))
        self.assertEqual(get_balance(self.db, PASS_ID)["expires_at"], expiry)

        adjust_credits(self.db, PASS_ID, -1, event_time=now + timedelta(days=5))
        self.assertEqual(get_balance(self.db, PASS_ID)["expires_at"], expiry)

    def test_invalid_deltas_rejected(self):
        for bad in (0, "abc", True, 0.4, float("inf"), None):
            with self.assertRaises(ValidationError) as ctx:
                adjust_credits(self.db, PASS_ID, bad)
            self.assertEqual(ctx.exception.code, "DELTA_INVALID")

    def test_insert_or_get_returns_existing_row(self):
        ensure_customer(self.db, PASS_ID)
        a, created_a = insert_or_get_transaction(
            self.db, CreditTransaction(pass_id=PASS_ID, delta=1, ref_type="x", ref_id="1")
        )
        b, created_b = insert_or_get_transaction(
            self.db, CreditTransaction(pass_id=PASS_ID, delta=9, ref_type="x", ref_id="1")
        )
        self.assertTrue(created_a)
        self.assertFalse(created_b)
        self.assertEqual(a.id, b.id)
        self.assertEqual(b.delta, 1)


class TestGenerationBilling(_DbTestCase):
    def test_preflight_raises_with_details(self):
        adjust_credits(self.db, PASS_ID, 1)
        with self.assertRaises(InsufficientCreditsError) as ctx:
            ensure_enough_credits(self.db, PASS_ID, 2, lane="niche")
        err = ctx.exception
        self.assertEqual(err.status_code, 402)
        self.assertEqual(err.needed, 2)
        self.assertTrue(err.details["canSwitchToMain"])
        self.assertEqual(err.to_dict()["error"], "INSUFFICIENT_CREDITS")

    def test_charge_is_idempotent_per_generation(self):
        adjust_credits(self.db, PASS_ID, 10)
        charge_generation(self.db, pass_id=PASS_ID, generation_id="g1", cost=2)
        again = charge_generation(self.db, pass_id=PASS_ID, generation_id="g1", cost=2)
        self.assertTrue(again["already"])
        self.assertEqual(self.balance(), 8)
        self.assertEqual(len(self.ledger(CHARGE_REF_TYPE)), 1)

    def test_refund_requires_a_charge(self):
        adjust_credits(self.db, PASS_ID, 10)
        out = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=2, err=RuntimeError("boom"))
        self.assertTrue(out["not_charged"])
        self.assertEqual(self.balance(), 10)

    def test_refund_applies_once(self):
        adjust_credits(self.db, PASS_ID, 10)
        charge_generation(self.db, pass_id=PASS_ID, generation_id="g1", cost=5)
        first = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=5, err=RuntimeError("boom"))
        second = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=5, err=RuntimeError("boom"))
        self.assertTrue(first["refunded"])
        self.assertTrue(second["already"])
        self.assertEqual(self.balance(), 10)
        self.assertEqual(len(self.ledger(REFUND_REF_TYPE)), 1)

    def test_safety_refund_limited_to_one_per_day(self):
        adjust_credits(self.db, PASS_ID, 10)
        for gid in ("g1", "g2"):
            charge_generation(self.db, pass_id=PASS_ID, generation_id=gid, cost=1)
        nsfw = RuntimeError("REPLICATE_FAILED: NSFW content detected")

        first = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=1, err=nsfw)
        second = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g2", cost=1, err=nsfw)

        self.assertTrue(first["refunded"])
        self.assertTrue(first["safety"])
        self.assertTrue(second["blocked_by_daily_limit"])
        self.assertEqual(self.balance(), 9)
        self.assertIn("courtesy_safety_refund_day", read_preferences(self.db, PASS_ID))

    def test_failed_charge_write_is_never_refunded(self):
        adjust_credits(self.db, PASS_ID, 10)
        with mock.patch("app.services.credits_engine._apply_delta", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                charge_generation(self.db, pass_id=PASS_ID, generation_id="g1", cost=5)
        self.assertEqual([r.status for r in self.ledger(CHARGE_REF_TYPE)], ["error"])
        self.assertEqual(self.balance(), 10)

        out = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=5, err=RuntimeError("db down"))
        self.assertTrue(out["not_charged"])
        self.assertEqual(self.balance(), 10)
        self.assertEqual(self.ledger(REFUND_REF_TYPE), [])

    def test_failed_safety_refund_keeps_the_daily_courtesy(self):
        adjust_credits(self.db, PASS_ID, 10)
        for gid in ("g1", "g2"):
            charge_generation(self.db, pass_id=PASS_ID, generation_id=gid, cost=1)
        nsfw = RuntimeError("REPLICATE_FAILED: NSFW content detected")

        with mock.patch("app.services.credits_engine._apply_delta", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g1", cost=1, err=nsfw)
        self.assertNotIn("courtesy_safety_refund_day", read_preferences(self.db, PASS_ID))

        out = refund_on_failure(self.db, pass_id=PASS_ID, generation_id="g2", cost=1, err=nsfw)
        self.assertTrue(out["refunded"])
        self.assertEqual(self.balance(), 9)

    def test_type_for_me_charges_every_tenth_success(self):
        adjust_credits(self.db, PASS_ID, 5)
        for _ in range(9):
            out = commit_type_for_me_success(self.db, PASS_ID)
            self.assertFalse(out["charged"])
        self.assertEqual(self.balance(), 5)

        out = commit_type_for_me_success(self.db, PASS_ID)
        self.assertTrue(out["charged"])
        self.assertEqual(out["bucket"], 1)
        self.assertEqual(self.balance(), 4)

    def test_type_for_me_preflight_checks_balance_before_a_charge(self):
        ensure_customer(self.db, PASS_ID)
        self.assertEqual(preflight_type_for_me(self.db, PASS_ID), 0)
        for _ in range(9):
            commit_type_for_me_success(self.db, PASS_ID)
        with self.assertRaises(InsufficientCreditsError):
            preflight_type_for_me(self.db, PASS_ID)


if __name__ == "__main__":
    unittest.main()
