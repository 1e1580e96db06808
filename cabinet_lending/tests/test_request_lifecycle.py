import unittest
from datetime import timedelta
from unittest import mock

from sqlalchemy import func, select

from cabinet_lending.tests.support import (
    T0,
    FailingNotifier,
    RaisingNotifier,
    RecordingNotifier,
    add_station,
    add_stock,
    make_session_factory,
    manager_access,
)
from cabinet_lending.models.lending_models import (
    AuditLog,
    BorrowRecord,
    EquipmentRequest,
    NotificationQueue,
    StationStock,
)
from cabinet_lending.services import inventory_service, request_service
from cabinet_lending.services.errors import (
    EquipmentUnavailableError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    RequestValidationFailed,
    TokenExpiredError,
    UnauthorizedError,
)


class RequestLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.engine, session_factory = make_session_factory()
        self.db = session_factory()
        self.notifier = RecordingNotifier()
        self.station = add_station(self.db)
        self.rope = add_stock(self.db, self.station, "Rescue rope", 1)
        self.gloves = add_stock(self.db, self.station, "Nitrile gloves", 10, consumable=True)
        self.db.commit()
        self.access = manager_access(self.station.StationID)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _submit(self, items, phone="0501111111", now=T0):
        return request_service.submit_request(
            self.db,
            self.notifier,
            self.station.StationID,
            "Avi Requester",
            phone,
            items,
            now=now,
        )

    def _manage(self, request_id, action, access=None, notifier=None, now=T0, **kwargs):
        return request_service.manage_request(
            self.db,
            access or self.access,
            notifier or self.notifier,
            request_id,
            action,
            self.station.StationID,
            now=now,
            **kwargs,
        )

    def _stock_quantity(self, stock):
        return self.db.execute(
            select(StationStock.Quantity).where(StationStock.StationStockID == stock.StationStockID)
        ).scalar_one()

    def _borrow_count(self):
        return self.db.execute(select(func.count()).select_from(BorrowRecord)).scalar_one()

    def test_submit_creates_pending_request_and_notifies_manager(self):
        result = self._submit([(self.rope.CatalogItemID, 1), (self.gloves.CatalogItemID, 4)])
        request = result.request

        self.assertEqual(request.Status, "pending")
        self.assertEqual(len(request.Items), 2)
        self.assertTrue(result.new_token)
        self.assertEqual(request.TokenHash, request_service.hash_token(result.new_token))
        self.assertEqual(request.ExpiresAt, T0 + timedelta(minutes=30))
        self.assertIn(("email", "north@example.org"), [(c, r) for c, r, _m in self.notifier.sent])
        # Submitting reserves nothing.
        self.assertEqual(self._stock_quantity(self.rope), 1)
        self.assertEqual(self._stock_quantity(self.gloves), 10)

    def test_submit_rejects_invalid_lines_without_writing(self):
        cases = [
            ([(self.rope.CatalogItemID, 2)], RequestValidationFailed),
            ([(self.gloves.CatalogItemID, 1), (self.gloves.CatalogItemID, 2)], RequestValidationFailed),
            ([(self.gloves.CatalogItemID, 0)], RequestValidationFailed),
            ([], RequestValidationFailed),
            ([(self.gloves.CatalogItemID, 11)], InsufficientStockError),
            ([(99999, 1)], NotFoundError),
        ]
        for items, error in cases:
            with self.subTest(items=items):
                with self.assertRaises(error):
                    self._submit(items)
        count = self.db.execute(select(func.count()).select_from(EquipmentRequest)).scalar_one()
        self.assertEqual(count, 0)

    def test_submit_rejects_faulty_equipment(self):
        radio = add_stock(self.db, self.station, "Radio", 2, condition="faulty", faulty_since=T0)
        self.db.commit()
        with self.assertRaises(EquipmentUnavailableError):
            self._submit([(radio.CatalogItemID, 1)])

    def test_second_approval_of_last_rope_fails_and_leaves_it_pending(self):
        first = self._submit([(self.rope.CatalogItemID, 1)], phone="0501111111").request
        second = self._submit([(self.rope.CatalogItemID, 1)], phone="0502222222").request

        approved = self._manage(first.RequestID, "approve")
        self.assertEqual(approved.request.Status, "picked_up")
        self.assertEqual(approved.request.ApprovedBy, "Dana Manager")
        self.assertEqual(approved.request.ApprovedAt, T0)

        with self.assertRaises(InsufficientStockError):
            self._manage(second.RequestID, "approve")

        self.assertEqual(self._stock_quantity(self.rope), 0)
        self.assertEqual(self._borrow_count(), 1)
        self.assertEqual(self.db.get(EquipmentRequest, second.RequestID).Status, "pending")

    def test_failed_line_check_leaves_stock_and_status_untouched(self):
        request = self._submit([(self.rope.CatalogItemID, 1), (self.gloves.CatalogItemID, 5)]).request
        self.db.get(StationStock, self.gloves.StationStockID).Quantity = 2
        self.db.commit()

        with self.assertRaises(InsufficientStockError):
            self._manage(request.RequestID, "approve")

        self.assertEqual(self._stock_quantity(self.rope), 1)
        self.assertEqual(self._stock_quantity(self.gloves), 2)
        self.assertEqual(self._borrow_count(), 0)
        self.assertEqual(self.db.get(EquipmentRequest, request.RequestID).Status, "pending")

    def test_lost_decrement_race_rolls_back_earlier_lines(self):
        request = self._submit([(self.rope.CatalogItemID, 1), (self.gloves.CatalogItemID, 3)]).request
        real_decrement = inventory_service.decrement_stock
        calls = []

        def flaky_decrement(db, stock_id, quantity):
            calls.append(stock_id)
            if len(calls) == 1:
                return real_decrement(db, stock_id, quantity)
            return False

        with mock.patch.object(request_service, "decrement_stock", side_effect=flaky_decrement):
            with self.assertRaises(InsufficientStockError):
                self._manage(request.RequestID, "approve")

        self.assertEqual(len(calls), 2)
        self.assertEqual(self._stock_quantity(self.rope), 1)
        self.assertEqual(self._stock_quantity(self.gloves), 10)
        self.assertEqual(self._borrow_count(), 0)
        self.assertEqual(self.db.get(EquipmentRequest, request.RequestID).Status, "pending")

    def test_consumables_are_deducted_without_borrow_records(self):
        request = self._submit([(self.gloves.CatalogItemID, 3)]).request
        self._manage(request.RequestID, "approve")

        self.assertEqual(self._stock_quantity(self.gloves), 7)
        self.assertEqual(self._borrow_count(), 0)

    def test_undo_pickup_restores_stock_and_removes_borrow(self):
        request = self._submit([(self.rope.CatalogItemID, 1), (self.gloves.CatalogItemID, 2)]).request
        self._manage(request.RequestID, "approve")
        self.assertEqual(self._borrow_count(), 1)

        undone = self._manage(request.RequestID, "undo_pickup")

        self.assertEqual(undone.request.Status, "cancelled")
        self.assertEqual(self._stock_quantity(self.rope), 1)
        self.assertEqual(self._stock_quantity(self.gloves), 10)
        self.assertEqual(self._borrow_count(), 0)
        with self.assertRaises(InvalidTransitionError):
            self._manage(request.RequestID, "undo_pickup")

    def test_undo_pickup_ignores_current_condition_and_quantity(self):
        request = self._submit([(self.rope.CatalogItemID, 1), (self.gloves.CatalogItemID, 2)]).request
        self._manage(request.RequestID, "approve")

        rope = self.db.get(StationStock, self.rope.StationStockID)
        inventory_service.mark_stock_condition(rope, "faulty", T0 + timedelta(hours=1))
        self.db.get(StationStock, self.gloves.StationStockID).Quantity = 4
        self.db.commit()

        undone = self._manage(request.RequestID, "undo_pickup", now=T0 + timedelta(hours=2))

        self.assertEqual(undone.request.Status, "cancelled")
        self.assertEqual(self._stock_quantity(self.rope), 1)
        self.assertEqual(self._stock_quantity(self.gloves), 6)
        self.assertEqual(self.db.get(StationStock, self.rope.StationStockID).Condition, "faulty")
        self.assertEqual(self._borrow_count(), 0)

    def test_undo_pickup_removes_borrow_when_stock_row_is_gone(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        self._manage(request.RequestID, "approve")
        self.assertEqual(self._borrow_count(), 1)

        self.db.delete(self.db.get(StationStock, self.rope.StationStockID))
        self.db.commit()

        with self.assertLogs("cabinet_lending.requests", level="WARNING") as logs:
            undone = self._manage(request.RequestID, "undo_pickup")

        self.assertEqual(undone.request.Status, "cancelled")
        self.assertEqual(self._borrow_count(), 0)
        self.assertTrue(any("stock_row_missing" in line for line in logs.output))

    def test_approve_refuses_multiple_units_of_reusable_item(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        self.db.get(EquipmentRequest, request.RequestID).Items[0].Quantity = 2
        self.rope.Quantity = 3
        self.db.commit()

        with self.assertRaises(RequestValidationFailed) as ctx:
            self._manage(request.RequestID, "approve")

        self.assertIn("only one can be borrowed", ctx.exception.detail)
        self.assertEqual(self._stock_quantity(self.rope), 3)
        self.assertEqual(self._borrow_count(), 0)
        self.assertEqual(self.db.get(EquipmentRequest, request.RequestID).Status, "pending")

    def test_undo_pickup_prefers_borrow_of_same_request(self):
        older = BorrowRecord(
            StationID=self.station.StationID,
            CatalogItemID=self.rope.CatalogItemID,
            RequestID=None,
            BorrowerName="Avi Requester",
            BorrowerPhone="0501111111",
            Quantity=1,
            Status="borrowed",
            BorrowDate=T0 + timedelta(days=1),
        )
        self.db.add(older)
        self.db.commit()
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        self._manage(request.RequestID, "approve")

        self._manage(request.RequestID, "undo_pickup")

        remaining = self.db.execute(select(BorrowRecord)).scalars().all()
        self.assertEqual([row.BorrowID for row in remaining], [older.BorrowID])

    def test_cancel_of_picked_up_request_points_to_undo(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        self._manage(request.RequestID, "approve")

        with self.assertRaises(InvalidTransitionError) as ctx:
            self._manage(request.RequestID, "cancel")
        self.assertIn("undo", ctx.exception.detail)

    def test_reject_and_cancel_are_terminal(self):
        rejected = self._submit([(self.rope.CatalogItemID, 1)]).request
        result = self._manage(rejected.RequestID, "reject", reason="Duplicate request")
        self.assertEqual(result.request.Status, "rejected")
        self.assertEqual(result.request.RejectedReason, "Duplicate request")
        self.assertTrue(result.to_payload()["request"]["isTerminal"])

        cancelled = self._submit([(self.gloves.CatalogItemID, 1)]).request
        self._manage(cancelled.RequestID, "cancel")

        for request_id in (rejected.RequestID, cancelled.RequestID):
            for action in ("approve", "reject", "cancel", "regenerate", "undo_pickup"):
                with self.subTest(request_id=request_id, action=action):
                    with self.assertRaises(InvalidTransitionError):
                        self._manage(request_id, action)
        self.assertEqual(self._stock_quantity(self.rope), 1)

    def test_legacy_approved_request_can_be_cancelled(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        self.db.get(EquipmentRequest, request.RequestID).Status = "approved"
        self.db.commit()

        result = self._manage(request.RequestID, "cancel", reason="No longer needed")
        self.assertEqual(result.request.Status, "cancelled")

    def test_manager_of_other_station_is_refused(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        with self.assertRaises(UnauthorizedError):
            self._manage(request.RequestID, "approve", access=manager_access(self.station.StationID + 1))
        self.assertEqual(self.db.get(EquipmentRequest, request.RequestID).Status, "pending")
        self.assertEqual(self._stock_quantity(self.rope), 1)

    def test_request_from_other_station_is_not_found(self):
        other = add_station(self.db, name="South Cabinet", email="south@example.org")
        self.db.commit()
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        with self.assertRaises(NotFoundError):
            request_service.approve_request(
                self.db,
                manager_access(other.StationID),
                self.notifier,
                request.RequestID,
                other.StationID,
                now=T0,
            )

    def test_verify_expires_pending_request_and_regenerate_replaces_token(self):
        submitted = self._submit([(self.rope.CatalogItemID, 1)])
        old_token = submitted.new_token

        found = request_service.verify_token(self.db, old_token, now=T0 + timedelta(minutes=29))
        self.assertEqual(found.RequestID, submitted.request.RequestID)

        with self.assertRaises(TokenExpiredError):
            request_service.verify_token(self.db, old_token, now=T0 + timedelta(minutes=31))
        self.assertEqual(self.db.get(EquipmentRequest, submitted.request.RequestID).Status, "expired")

        later = T0 + timedelta(hours=2)
        regenerated = self._manage(submitted.request.RequestID, "regenerate", now=later)
        self.assertEqual(regenerated.request.Status, "pending")
        self.assertNotEqual(regenerated.new_token, old_token)
        self.assertIn("newToken", regenerated.to_payload())

        with self.assertRaises(NotFoundError):
            request_service.verify_token(self.db, old_token, now=later)
        again = request_service.verify_token(self.db, regenerated.new_token, now=later + timedelta(minutes=5))
        self.assertEqual(again.Status, "pending")

        actions = self.db.execute(select(AuditLog.Action).order_by(AuditLog.AuditID)).scalars().all()
        self.assertIn("request_expired", actions)
        self.assertIn("token_regenerated", actions)

    def test_regenerate_of_pending_request_is_refused(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        with self.assertRaises(InvalidTransitionError):
            self._manage(request.RequestID, "regenerate")

    def test_extend_token_moves_expiry(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        result = request_service.extend_token(
            self.db, self.access, self.notifier, request.RequestID, self.station.StationID, 60, now=T0
        )
        self.assertEqual(result.request.ExpiresAt, T0 + timedelta(minutes=90))
        self.assertEqual(result.request.Status, "pending")

        for minutes in (0, 24 * 60 + 1):
            with self.subTest(minutes=minutes):
                with self.assertRaises(RequestValidationFailed):
                    request_service.extend_token(
                        self.db, self.access, self.notifier, request.RequestID, self.station.StationID, minutes, now=T0
                    )

    def test_notifier_failure_does_not_undo_approval(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request

        for notifier in (FailingNotifier(), RaisingNotifier()):
            with self.subTest(notifier=notifier.__class__.__name__):
                self.db.get(EquipmentRequest, request.RequestID).Status = "pending"
                self.db.get(StationStock, self.rope.StationStockID).Quantity = 1
                self.db.execute(BorrowRecord.__table__.delete())
                self.db.commit()

                result = self._manage(request.RequestID, "approve", notifier=notifier)
                self.assertEqual(result.request.Status, "picked_up")
                self.assertEqual(self._stock_quantity(self.rope), 0)

        unsent = self.db.execute(
            select(NotificationQueue).where(
                NotificationQueue.NotificationType == "RequestApproved",
                NotificationQueue.SentAt.is_(None),
            )
        ).scalars().all()
        self.assertEqual(len(unsent), 2)
        self.assertTrue(all(row.LastError for row in unsent))

    def test_unknown_action_is_rejected(self):
        request = self._submit([(self.rope.CatalogItemID, 1)]).request
        with self.assertRaises(RequestValidationFailed):
            self._manage(request.RequestID, "confirm_pickup")


if __name__ == "__main__":
    unittest.main()
