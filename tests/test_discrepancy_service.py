from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select

from supply_portal.errors import AlreadyResolved, Forbidden, InvalidTransition, NotFound, ValidationError
from supply_portal.models import AuditLog, Discrepancy, Notification, NotificationType, OrderStatus
from supply_portal.services.discrepancy_service import (
    DiscrepancyReportItem,
    discrepancy_to_dict,
    get_discrepancy,
    has_unresolved,
    list_discrepancies,
    report_discrepancies,
    resolve_discrepancy,
)
from supply_portal.services.order_service import accept_order, create_order, dispatch_order, get_order
from db_support import (
    ADMIN,
    AUDITOR,
    F1_OWNER,
    F1_STAFF,
    F2_OWNER,
    V1_STAFF,
    V2_STAFF,
    make_dispatcher,
    make_session_factory,
    sample_items,
    seed_directory,
)


class DiscrepancyServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory()
        self.dispatcher = make_dispatcher(self.Session)
        self.db = self.Session()
        seed_directory(self.db)
        order = create_order(self.db, F1_OWNER, items=sample_items(), dispatcher=self.dispatcher)
        self.order_id = order.id

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _dispatch(self) -> None:
        accept_order(self.db, V1_STAFF, self.order_id, dispatcher=self.dispatcher)
        dispatch_order(self.db, V1_STAFF, self.order_id, dispatch_photos=['d.jpg'], dispatcher=self.dispatcher)

    def _report(self, claim=F1_OWNER, **kwargs) -> list[Discrepancy]:
        items = kwargs.pop('items', None) or [DiscrepancyReportItem(item_name='Burger Buns', received_qty=Decimal('7'))]
        return report_discrepancies(self.db, claim, self.order_id, items, dispatcher=self.dispatcher)

    def test_report_creates_shortfall_and_flags_order(self) -> None:
        self._dispatch()
        rows = self._report(
            items=[
                DiscrepancyReportItem(
                    item_name='burger buns',
                    received_qty=Decimal('7'),
                    notes='torn bag',
                    photos=('https://photos.example/torn.jpg',),
                ),
                DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('4')),
            ]
        )

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.item_name, 'Burger Buns')
        self.assertEqual(row.ordered_qty, Decimal('10'))
        self.assertEqual(row.difference, Decimal('3'))
        self.assertEqual(row.reported_by, 'f1-owner')
        self.assertEqual(row.vendor_id, 'v1')
        self.assertEqual(row.photos, ['https://photos.example/torn.jpg'])
        self.assertFalse(row.resolved)
        self.assertEqual(discrepancy_to_dict(row)['kind'], 'SHORTFALL')
        self.assertEqual(get_order(self.db, ADMIN, self.order_id).status, OrderStatus.DISCREPANCY)

    def test_surplus_has_negative_difference(self) -> None:
        self._dispatch()
        rows = self._report(items=[DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('5.5'))])
        self.assertEqual(rows[0].difference, Decimal('-1.5'))
        self.assertEqual(discrepancy_to_dict(rows[0])['kind'], 'SURPLUS')

    def test_stored_ordered_quantity_wins_over_reported_one(self) -> None:
        self._dispatch()
        rows = self._report(
            items=[DiscrepancyReportItem(item_name='Burger Buns', ordered_qty=Decimal('50'), received_qty=Decimal('7'))]
        )
        self.assertEqual(rows[0].ordered_qty, Decimal('10'))
        self.assertEqual(rows[0].difference, Decimal('3'))

    def test_retrying_a_report_does_not_duplicate(self) -> None:
        self._dispatch()
        first = self._report()
        second = self._report()

        self.assertEqual([row.id for row in second], [row.id for row in first])
        self.assertEqual(has_unresolved(self.db, self.order_id).unresolved_count, 1)

    def test_report_notifies_vendor_kitchen_per_discrepancy(self) -> None:
        self._dispatch()
        rows = self._report()

        notifications = self.db.execute(
            select(Notification).where(Notification.type == NotificationType.DISCREPANCY_NEW)
        ).scalars().all()
        self.assertEqual({row.user_id for row in notifications}, {'v1', 'v1-chef', 'v1-staff'})
        self.assertTrue(all(row.reference_id == str(rows[0].id) for row in notifications))

    def test_report_requires_dispatched_order(self) -> None:
        with self.assertRaises(InvalidTransition):
            self._report()

    def test_report_validation(self) -> None:
        self._dispatch()
        invalid = [
            [],
            [DiscrepancyReportItem(item_name='Pickles', received_qty=Decimal('1'))],
            [DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('-1'))],
            [DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('4'))],
            [DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('3'), photos=('',))],
        ]
        for items in invalid:
            with self.subTest(items=items):
                with self.assertRaises(ValidationError):
                    report_discrepancies(self.db, F1_OWNER, self.order_id, items, dispatcher=self.dispatcher)
        self.assertFalse(has_unresolved(self.db, self.order_id).has_unresolved)

    def test_report_requires_owning_franchise(self) -> None:
        self._dispatch()
        for claim in (F2_OWNER, V1_STAFF, ADMIN):
            with self.subTest(role=claim.role):
                with self.assertRaises(Forbidden):
                    self._report(claim=claim)

    def test_has_unresolved_summary(self) -> None:
        self._dispatch()
        self.assertEqual(
            has_unresolved(self.db, self.order_id).to_dict(),
            {'has_unresolved': False, 'unresolved_count': 0, 'discrepancies': []},
        )
        self._report(
            items=[
                DiscrepancyReportItem(item_name='Burger Buns', received_qty=Decimal('7')),
                DiscrepancyReportItem(item_name='Cheese', received_qty=Decimal('6')),
            ]
        )
        summary = has_unresolved(self.db, self.order_id)
        self.assertTrue(summary.has_unresolved)
        self.assertEqual(summary.unresolved_count, 2)
        self.assertEqual({row['item_name'] for row in summary.discrepancies}, {'Burger Buns', 'Cheese'})

    def test_resolve_notifies_reporter_only(self) -> None:
        self._dispatch()
        row = self._report(claim=F1_STAFF)[0]

        resolved = resolve_discrepancy(self.db, ADMIN, row.id, 'replacement sent', dispatcher=self.dispatcher)

        self.assertTrue(resolved.resolved)
        self.assertEqual(resolved.resolved_by, 'admin')
        self.assertEqual(resolved.resolution_notes, 'replacement sent')
        self.assertIsNotNone(resolved.resolved_at)
        notifications = self.db.execute(
            select(Notification).where(Notification.type == NotificationType.DISCREPANCY_RESOLVED)
        ).scalars().all()
        self.assertEqual([n.user_id for n in notifications], ['f1-staff'])
        actions = self.db.execute(select(AuditLog.action).where(AuditLog.discrepancy_id == row.id)).scalars().all()
        self.assertEqual(sorted(actions), ['DISCREPANCY_REPORTED', 'DISCREPANCY_RESOLVED'])

    def test_resolve_twice_keeps_first_notes(self) -> None:
        self._dispatch()
        row = self._report()[0]
        resolve_discrepancy(self.db, ADMIN, row.id, 'replacement sent', dispatcher=self.dispatcher)

        with self.assertRaises(AlreadyResolved):
            resolve_discrepancy(self.db, ADMIN, row.id, 'credit note', dispatcher=self.dispatcher)
        self.assertEqual(get_discrepancy(self.db, ADMIN, row.id).resolution_notes, 'replacement sent')

    def test_resolve_requires_admin(self) -> None:
        self._dispatch()
        row = self._report()[0]
        for claim in (AUDITOR, F1_OWNER, V1_STAFF):
            with self.subTest(role=claim.role):
                with self.assertRaises(Forbidden):
                    resolve_discrepancy(self.db, claim, row.id, 'ok', dispatcher=self.dispatcher)

    def test_resolve_unknown_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            resolve_discrepancy(self.db, ADMIN, 404, 'ok', dispatcher=self.dispatcher)

    def test_listing_is_scoped(self) -> None:
        self._dispatch()
        row = self._report()[0]

        self.assertEqual([r['id'] for r in list_discrepancies(self.db, V1_STAFF)], [row.id])
        self.assertEqual(list_discrepancies(self.db, V2_STAFF), [])
        self.assertEqual(list_discrepancies(self.db, F2_OWNER), [])
        self.assertEqual([r['id'] for r in list_discrepancies(self.db, AUDITOR, resolved=False)], [row.id])
        self.assertEqual(list_discrepancies(self.db, ADMIN, resolved=True), [])
        with self.assertRaises(NotFound):
            get_discrepancy(self.db, F2_OWNER, row.id)


if __name__ == '__main__':
    unittest.main()
