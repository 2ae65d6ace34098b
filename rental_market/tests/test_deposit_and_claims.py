import json
import unittest
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

from rental_market.tests.support import ARBITER, NOW, OTHER_RENTER, OWNER, POLICY, RENTER, add_equipment, make_session_factory, make_store

from rental_market.models.rental_models import RentalEvent
from rental_market.services.authorization import SYSTEM_ACTOR
from rental_market.services.booking_service import activate_booking, approve_booking, complete_booking, create_booking_request
from rental_market.services.claim_service import (
    allocate_claim_amount,
    assert_claim_transition,
    decide_disputed_claim,
    escalate_unanswered_claims,
    file_claim,
    parse_renter_response,
    parse_resolution,
    respond_to_claim,
    serialize_claim,
)
from rental_market.services.deposit_service import (
    auto_release_deposits,
    available_deposit,
    calculate_deposit_refund,
    can_release_deposit,
    release_deposit,
)
from rental_market.services.errors import (
    AuthorizationError,
    IllegalTransitionError,
    PolicyError,
    ValidationError,
)


class DepositRulesTests(unittest.TestCase):
    def test_release_requires_return_inspection(self):
        payment = SimpleNamespace(deposit_amount=Decimal("300"), deposit_status="held")
        check = can_release_deposit(payment, return_inspection_completed=False, has_pending_claims=False)
        self.assertFalse(check.can_release)
        self.assertEqual(check.reason, "Return inspection not completed")

    def test_release_checks_run_in_order(self):
        self.assertEqual(can_release_deposit(None, True, False).reason, "No deposit to release")
        zero = SimpleNamespace(deposit_amount=Decimal("0"), deposit_status="none")
        self.assertEqual(can_release_deposit(zero, True, False).reason, "No deposit to release")
        released = SimpleNamespace(deposit_amount=Decimal("300"), deposit_status="released")
        self.assertEqual(can_release_deposit(released, False, True).reason, "Deposit already processed")
        held = SimpleNamespace(deposit_amount=Decimal("300"), deposit_status="held")
        self.assertEqual(can_release_deposit(held, True, True).reason, "Pending damage claims exist")
        self.assertTrue(can_release_deposit(held, True, False).can_release)

    def test_refund_never_goes_negative(self):
        self.assertEqual(calculate_deposit_refund(300, 450), Decimal("0.00"))
        self.assertEqual(calculate_deposit_refund(300, 120), Decimal("180.00"))
        with self.assertRaises(ValidationError):
            calculate_deposit_refund(-1, 0)

    def test_refund_stays_within_deposit(self):
        amounts = [Decimal(value) for value in ("0", "0.01", "49.99", "150", "300", "300.01", "1000")]
        for deposit in amounts:
            for claimed in amounts:
                refund = calculate_deposit_refund(deposit, claimed)
                self.assertGreaterEqual(refund, Decimal("0"))
                self.assertLessEqual(refund, deposit)
                self.assertEqual(refund, max(Decimal("0"), deposit - claimed))

    def test_allocation_conserves_final_amount(self):
        cases = [
            (Decimal("200"), Decimal("300"), Decimal("0")),
            (Decimal("450"), Decimal("300"), Decimal("0")),
            (Decimal("1000"), Decimal("300"), Decimal("500")),
            (Decimal("400"), Decimal("0"), Decimal("2000")),
            (Decimal("0"), Decimal("300"), Decimal("500")),
        ]
        for final, deposit, limit in cases:
            allocation = allocate_claim_amount(final, deposit, limit)
            self.assertEqual(
                allocation.paid_from_deposit + allocation.paid_from_insurance + allocation.additional_charge,
                allocation.final_amount,
            )
            self.assertLessEqual(allocation.paid_from_deposit, deposit)
            self.assertLessEqual(allocation.paid_from_insurance, limit)
            self.assertGreaterEqual(allocation.additional_charge, Decimal("0"))

        split = allocate_claim_amount(1000, 300, 500)
        self.assertEqual(
            (split.paid_from_deposit, split.paid_from_insurance, split.additional_charge),
            (Decimal("300.00"), Decimal("500.00"), Decimal("200.00")),
        )

    def test_pending_to_escalated_is_system_only(self):
        with self.assertRaises(IllegalTransitionError):
            assert_claim_transition("pending", "escalated", OWNER)
        assert_claim_transition("pending", "escalated", SYSTEM_ACTOR)
        with self.assertRaises(IllegalTransitionError):
            assert_claim_transition("resolved", "disputed", ARBITER)


class SettlementFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = make_session_factory()
        self.db = factory()
        self.store = make_store(self.db)
        self.equipment = add_equipment(self.db, daily_rate="100.00", deposit="300.00")
        self.booking = create_booking_request(
            self.store, self.equipment.id, RENTER, date(2024, 6, 15), date(2024, 6, 20), now=NOW, policy=POLICY
        )
        approve_booking(self.store, self.booking.id, OWNER, now=NOW)
        self.pickup = NOW + timedelta(days=14)
        activate_booking(self.store, self.booking.id, RENTER, True, now=self.pickup)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _payment(self):
        return self.store.get_payment_for_booking(self.booking.id)

    def _event_types(self):
        events = self.db.query(RentalEvent).filter(RentalEvent.booking_id == self.booking.id).order_by(RentalEvent.id).all()
        return [event.event_type for event in events]

    def test_accepted_claim_resolves_for_estimated_cost(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Cracked housing", 200, evidence_photos=["a.jpg"], now=self.pickup)
        respond_to_claim(self.store, claim.id, RENTER, "accept", now=self.pickup + timedelta(hours=2), policy=POLICY)

        self.assertEqual(claim.status, "resolved")
        resolution = parse_resolution(claim)
        self.assertEqual(resolution.final_amount, Decimal("200.00"))
        self.assertEqual(resolution.paid_from_deposit, Decimal("200.00"))
        self.assertEqual(resolution.additional_charge, Decimal("0.00"))
        self.assertEqual(self._payment().deposit_status, "held")
        self.assertEqual(self._payment().deposit_claimed_amount, Decimal("200.00"))
        self.assertEqual(available_deposit(self._payment()), Decimal("100.00"))
        self.assertEqual(serialize_claim(claim)["evidencePhotos"], ["a.jpg"])
        self.assertIn("claim_resolved", self._event_types())
        self.assertIn("deposit_claimed", self._event_types())

    def test_second_claim_draws_on_remaining_deposit(self):
        first = file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=self.pickup)
        respond_to_claim(self.store, first.id, RENTER, "accept", now=self.pickup, policy=POLICY)
        second = file_claim(self.store, self.booking.id, OWNER, "Bent guard", 150, now=self.pickup + timedelta(days=1))
        respond_to_claim(self.store, second.id, RENTER, "accept", now=self.pickup + timedelta(days=1), policy=POLICY)

        resolution = parse_resolution(second)
        self.assertEqual(resolution.paid_from_deposit, Decimal("150.00"))
        self.assertEqual(resolution.additional_charge, Decimal("0.00"))
        payment = self._payment()
        self.assertEqual(payment.deposit_status, "held")
        self.assertEqual(payment.deposit_claimed_amount, Decimal("230.00"))

        done = self.pickup + timedelta(days=5)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)
        payment = release_deposit(self.store, self.booking.id, OWNER, now=done)
        self.assertEqual(payment.deposit_status, "claimed")
        self.assertEqual(payment.deposit_refund_amount, Decimal("70.00"))
        self.assertEqual(payment.deposit_released_at, done)
        released = [e for e in self.db.query(RentalEvent).all() if e.event_type == "deposit_released"]
        self.assertEqual(json.loads(released[0].event_data)["refund"], "70.00")

    def test_claims_after_deposit_is_used_up_are_charged(self):
        first = file_claim(self.store, self.booking.id, OWNER, "Cracked housing", 300, now=self.pickup)
        respond_to_claim(self.store, first.id, RENTER, "accept", now=self.pickup, policy=POLICY)
        self.assertEqual(self._payment().deposit_status, "claimed")
        self.assertEqual(self._payment().deposit_refund_amount, Decimal("0.00"))

        second = file_claim(self.store, self.booking.id, OWNER, "Lost blade", 50, now=self.pickup)
        respond_to_claim(self.store, second.id, RENTER, "accept", now=self.pickup, policy=POLICY)
        resolution = parse_resolution(second)
        self.assertEqual(resolution.paid_from_deposit, Decimal("0.00"))
        self.assertEqual(resolution.additional_charge, Decimal("50.00"))
        self.assertEqual(self._payment().deposit_claimed_amount, Decimal("300.00"))

    def test_claim_beyond_deposit_uses_insurance_then_charge(self):
        self.booking.insurance_type = "basic"
        self.db.flush()
        claim = file_claim(self.store, self.booking.id, OWNER, "Motor burnt out", 1000, now=self.pickup)
        respond_to_claim(self.store, claim.id, RENTER, "accept", now=self.pickup, policy=POLICY)
        resolution = parse_resolution(claim)
        self.assertEqual(resolution.paid_from_deposit, Decimal("300.00"))
        self.assertEqual(resolution.paid_from_insurance, Decimal("500.00"))
        self.assertEqual(resolution.additional_charge, Decimal("200.00"))
        self.assertEqual(self._payment().deposit_status, "claimed")
        self.assertEqual(self._payment().deposit_refund_amount, Decimal("0.00"))

    def test_disputed_claim_resolved_at_counter_offer(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Scratched blade", 250, now=self.pickup)
        respond_to_claim(
            self.store, claim.id, RENTER, "negotiate", notes="Pre-existing", counter_offer=100, now=self.pickup, policy=POLICY
        )
        self.assertEqual(claim.status, "disputed")
        self.assertEqual(parse_renter_response(claim).counter_offer, Decimal("100.00"))
        self.assertTrue(self.store.has_open_claims(self.booking.id))

        decide_disputed_claim(self.store, claim.id, ARBITER, "resolve", now=self.pickup + timedelta(days=1), policy=POLICY)
        self.assertEqual(claim.status, "resolved")
        self.assertEqual(parse_resolution(claim).final_amount, Decimal("100.00"))
        self.assertFalse(self.store.has_open_claims(self.booking.id))

    def test_negotiate_requires_counter_offer(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=self.pickup)
        with self.assertRaises(ValidationError):
            respond_to_claim(self.store, claim.id, RENTER, "negotiate", now=self.pickup, policy=POLICY)
        self.assertEqual(claim.status, "pending")

    def test_only_booking_renter_may_respond(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=self.pickup)
        with self.assertRaises(AuthorizationError):
            respond_to_claim(self.store, claim.id, OTHER_RENTER, "accept", now=self.pickup, policy=POLICY)
        with self.assertRaises(AuthorizationError):
            file_claim(self.store, self.booking.id, RENTER, "Dent", 80, now=self.pickup)

    def test_response_after_window_is_refused(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=self.pickup)
        with self.assertRaises(PolicyError) as ctx:
            respond_to_claim(self.store, claim.id, RENTER, "dispute", now=self.pickup + timedelta(hours=73), policy=POLICY)
        self.assertEqual(ctx.exception.reason, "Response window has expired")

    def test_unanswered_claims_escalate_after_window(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Missing charger", 120, now=self.pickup)
        self.assertEqual(escalate_unanswered_claims(self.store, now=self.pickup + timedelta(hours=71), policy=POLICY), [])

        escalated = escalate_unanswered_claims(self.store, now=self.pickup + timedelta(hours=73), policy=POLICY)
        self.assertEqual([item.id for item in escalated], [claim.id])
        self.assertEqual(claim.status, "escalated")
        self.assertEqual(parse_resolution(claim).paid_from_deposit, Decimal("120.00"))
        self.assertEqual(self._payment().deposit_status, "held")
        self.assertEqual(self._payment().deposit_claimed_amount, Decimal("120.00"))

    def test_decision_requires_disputed_claim(self):
        claim = file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=self.pickup)
        with self.assertRaises(IllegalTransitionError):
            decide_disputed_claim(self.store, claim.id, ARBITER, "resolve", final_amount=50, now=self.pickup, policy=POLICY)
        with self.assertRaises(AuthorizationError):
            decide_disputed_claim(self.store, claim.id, RENTER, "resolve", final_amount=50, now=self.pickup, policy=POLICY)

    def test_release_blocked_while_claim_pending(self):
        done = self.pickup + timedelta(days=5)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)
        file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=done)
        with self.assertRaises(PolicyError) as ctx:
            release_deposit(self.store, self.booking.id, OWNER, now=done)
        self.assertEqual(ctx.exception.reason, "Pending damage claims exist")
        self.assertEqual(self._payment().deposit_status, "held")

    def test_release_after_return(self):
        done = self.pickup + timedelta(days=5)
        with self.assertRaises(PolicyError):
            release_deposit(self.store, self.booking.id, OWNER, now=done)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)
        payment = release_deposit(self.store, self.booking.id, OWNER, now=done)
        self.assertEqual(payment.deposit_status, "released")
        self.assertEqual(payment.deposit_released_at, done)
        self.assertEqual(payment.deposit_refund_amount, Decimal("300.00"))
        with self.assertRaises(PolicyError) as ctx:
            release_deposit(self.store, self.booking.id, OWNER, now=done)
        self.assertEqual(ctx.exception.reason, "Deposit already processed")

    def test_auto_release_waits_for_window(self):
        done = self.pickup + timedelta(days=5)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)

        early = auto_release_deposits(self.store, now=done + timedelta(hours=47), policy=POLICY)
        self.assertEqual(early["released"], 0)
        preview = auto_release_deposits(self.store, now=done + timedelta(hours=49), policy=POLICY, dry_run=True)
        self.assertEqual((preview["eligible"], preview["released"]), (1, 0))
        self.assertEqual(self._payment().deposit_status, "held")

        result = auto_release_deposits(self.store, now=done + timedelta(hours=49), policy=POLICY)
        self.assertEqual(result["releasedBookingIDs"], [self.booking.id])
        self.assertEqual(self._payment().deposit_status, "released")
        released = [e for e in self.db.query(RentalEvent).all() if e.event_type == "deposit_released"]
        self.assertEqual(released[0].created_by, "system")
        self.assertEqual(json.loads(released[0].event_data)["amount"], "300.00")

    def test_equipment_refund_timeline_overrides_policy(self):
        self.equipment.deposit_refund_timeline_hours = 96
        self.db.flush()
        done = self.pickup + timedelta(days=5)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)
        self.assertEqual(auto_release_deposits(self.store, now=done + timedelta(hours=49), policy=POLICY)["released"], 0)
        self.assertEqual(auto_release_deposits(self.store, now=done + timedelta(hours=97), policy=POLICY)["released"], 1)

    def test_auto_release_skips_blocked_deposits_before_limit(self):
        done = self.pickup + timedelta(days=5)
        complete_booking(self.store, self.booking.id, RENTER, True, now=done)
        file_claim(self.store, self.booking.id, OWNER, "Dent", 80, now=done)

        later = create_booking_request(
            self.store, self.equipment.id, OTHER_RENTER, date(2024, 6, 22), date(2024, 6, 25), now=NOW, policy=POLICY
        )
        approve_booking(self.store, later.id, OWNER, now=NOW)
        activate_booking(self.store, later.id, OTHER_RENTER, True, now=done + timedelta(days=2))
        later_done = done + timedelta(days=5)
        complete_booking(self.store, later.id, OTHER_RENTER, True, now=later_done)

        result = auto_release_deposits(self.store, now=later_done + timedelta(hours=49), policy=POLICY, limit=1)
        self.assertEqual(result["releasedBookingIDs"], [later.id])
        self.assertEqual(self.store.get_payment_for_booking(later.id).deposit_status, "released")
        self.assertEqual(self._payment().deposit_status, "held")


if __name__ == "__main__":
    unittest.main()
