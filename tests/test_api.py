from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from supply_portal.db import get_db
from supply_portal.main import app
from supply_portal.services.notification_service import notification_dispatcher
from db_support import make_session_factory, seed_directory

F1_OWNER = {'X-User-Id': 'f1-owner', 'X-User-Role': 'FRANCHISE', 'X-Franchise-Id': 'f1', 'X-User-Name': 'F1 Owner'}
F2_OWNER = {'X-User-Id': 'f2-owner', 'X-User-Role': 'FRANCHISE', 'X-Franchise-Id': 'f2'}
V1_STAFF = {'X-User-Id': 'v1-staff', 'X-User-Role': 'KITCHEN_STAFF', 'X-Vendor-Id': 'v1'}
ADMIN = {'X-User-Id': 'admin', 'X-User-Role': 'admin'}

ORDER_BODY = {
    'items': [
        {'item_name': 'Burger Buns', 'quantity': '10', 'unit_price': '5', 'vendor_price': '4', 'uom': 'pcs'},
        {'item_name': 'Cheese', 'quantity': '4', 'unit_price': '20', 'vendor_price': '15', 'uom': 'kg'},
    ]
}


class SupplyApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory()
        with self.Session() as db:
            seed_directory(db)

        def override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.patches = [
            patch.object(notification_dispatcher, '_session_factory', self.Session),
            patch.object(notification_dispatcher, '_max_workers', 1),
        ]
        for patcher in self.patches:
            patcher.start()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        for patcher in reversed(self.patches):
            patcher.stop()
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _create_order(self) -> dict:
        response = self.client.post('/orders', json=ORDER_BODY, headers=F1_OWNER)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _dispatch(self, order_id: int) -> None:
        self.assertEqual(self.client.put(f'/orders/{order_id}/accept', headers=V1_STAFF).status_code, 200)
        response = self.client.put(
            f'/orders/{order_id}/dispatch',
            json={'dispatch_photos': ['https://photos.example/1.jpg']},
            headers=V1_STAFF,
        )
        self.assertEqual(response.status_code, 200, response.text)

    def test_health_needs_no_claim(self) -> None:
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})
        self.assertIn('X-Request-ID', response.headers)

    def test_missing_claim_is_unauthorized(self) -> None:
        response = self.client.get('/orders')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['code'], 'UNAUTHORIZED')

        response = self.client.get('/orders', headers={'X-User-Id': 'x', 'X-User-Role': 'CHEF'})
        self.assertEqual(response.status_code, 401)

    def test_request_id_is_propagated(self) -> None:
        response = self.client.get('/orders', headers={**F1_OWNER, 'X-Request-ID': 'req-123'})
        self.assertEqual(response.headers['X-Request-ID'], 'req-123')
        self.assertEqual(response.headers['Cache-Control'], 'no-store')

    def test_create_and_fetch_order(self) -> None:
        order = self._create_order()

        self.assertEqual(order['status'], 'PLACED')
        self.assertEqual(float(order['total_amount']), 130.0)
        self.assertEqual([item['item_name'] for item in order['items']], ['Burger Buns', 'Cheese'])

        fetched = self.client.get(f"/orders/{order['id']}", headers=V1_STAFF)
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()['order_number'], order['order_number'])

        hidden = self.client.get(f"/orders/{order['id']}", headers=F2_OWNER)
        self.assertEqual(hidden.status_code, 404)
        self.assertEqual(hidden.json()['code'], 'NOT_FOUND')

    def test_invalid_order_is_bad_request(self) -> None:
        response = self.client.post(
            '/orders',
            json={'items': [{'item_name': 'Buns', 'quantity': '0', 'unit_price': '1'}]},
            headers=F1_OWNER,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'VALIDATION_ERROR')

        response = self.client.post('/orders', json={'items': 'nope'}, headers=F1_OWNER)
        self.assertEqual(response.status_code, 400)

    def test_list_orders_by_status(self) -> None:
        order = self._create_order()
        self._create_order()
        self.client.put(f"/orders/{order['id']}/accept", headers=V1_STAFF)

        response = self.client.get('/orders', params={'status': 'ACCEPTED'}, headers=ADMIN)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row['id'] for row in response.json()], [order['id']])

    def test_dispatch_without_photos_is_rejected(self) -> None:
        order = self._create_order()
        self.client.put(f"/orders/{order['id']}/accept", headers=V1_STAFF)

        response = self.client.put(f"/orders/{order['id']}/dispatch", json={'dispatch_photos': []}, headers=V1_STAFF)
        self.assertEqual(response.status_code, 400)

    def test_discrepancy_flow_blocks_then_allows_receive(self) -> None:
        order = self._create_order()
        self._dispatch(order['id'])

        report = self.client.post(
            '/discrepancies',
            json={'order_id': order['id'], 'items': [{'item_name': 'Burger Buns', 'received_qty': '7'}]},
            headers=F1_OWNER,
        )
        self.assertEqual(report.status_code, 201, report.text)
        discrepancy = report.json()[0]
        self.assertEqual(float(discrepancy['difference']), 3.0)

        check = self.client.get(f"/orders/{order['id']}/unresolved-discrepancies", headers=F1_OWNER)
        self.assertEqual(check.json()['unresolved_count'], 1)

        blocked = self.client.put(f"/orders/{order['id']}/receive", json={}, headers=F1_OWNER)
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()['code'], 'BLOCKED_BY_DISCREPANCY')
        self.assertEqual(blocked.json()['unresolved_count'], 1)
        self.assertEqual(len(blocked.json()['discrepancies']), 1)

        forbidden = self.client.put(
            f"/discrepancies/{discrepancy['id']}/resolve",
            json={'resolution_notes': 'replacement sent'},
            headers=F1_OWNER,
        )
        self.assertEqual(forbidden.status_code, 403)

        resolved = self.client.put(
            f"/discrepancies/{discrepancy['id']}/resolve",
            json={'resolution_notes': 'replacement sent'},
            headers=ADMIN,
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertTrue(resolved.json()['resolved'])

        again = self.client.put(
            f"/discrepancies/{discrepancy['id']}/resolve",
            json={'resolution_notes': 'credit note'},
            headers=ADMIN,
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()['code'], 'ALREADY_RESOLVED')

        received = self.client.put(f"/orders/{order['id']}/receive", json={}, headers=F1_OWNER)
        self.assertEqual(received.status_code, 200, received.text)
        self.assertEqual(received.json()['status'], 'RECEIVED')

    def test_notification_endpoints(self) -> None:
        self._create_order()

        listing = self.client.get('/notifications', headers=V1_STAFF)
        self.assertEqual(listing.status_code, 200)
        body = listing.json()
        self.assertEqual(body['total'], 1)
        self.assertEqual(body['unread_count'], 1)
        notification_id = body['notifications'][0]['id']
        self.assertEqual(body['notifications'][0]['type'], 'ORDER_NEW')

        self.assertEqual(self.client.put(f'/notifications/{notification_id}/read', headers=F1_OWNER).status_code, 403)
        marked = self.client.put(f'/notifications/{notification_id}/read', headers=V1_STAFF)
        self.assertTrue(marked.json()['is_read'])

        read_all = self.client.put('/notifications/read-all', headers=V1_STAFF)
        self.assertEqual(read_all.json(), {'updated': 0, 'failed': 0})

        deleted = self.client.delete(f'/notifications/{notification_id}', headers=V1_STAFF)
        self.assertEqual(deleted.status_code, 200)
        missing = self.client.delete(f'/notifications/{notification_id}', headers=V1_STAFF)
        self.assertEqual(missing.status_code, 404)


if __name__ == '__main__':
    unittest.main()
