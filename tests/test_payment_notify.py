import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from core.db import DB
from core.errors import ConflictError, NotFoundError, ValidationError
from core.gateways import TRADE_PENDING, TRADE_SUCCESS
from core.gateways.mock import MockGateway
from core.models.order import Order
from core.models.payment_transaction import PaymentTransaction
from core.models.recharge_record import RechargeRecord
from core.models.user import User
from core.order_service import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING,
    cancel_order,
    create_order,
)
from core.payment_service import (
    create_payment_for_order,
    create_payment_for_recharge,
    handle_gateway_notify,
    reconcile_pending_order,
    reconcile_pending_recharge,
)
from core.recharge_service import RECHARGE_STATUS_PAID, RECHARGE_STATUS_PENDING, create_recharge
from factories import cleanup_users, make_package, make_user


def signed_notify(order_no: str, amount: str, trade_no: str = "M-1", status: str = TRADE_SUCCESS) -> dict:
    params = {
        "out_trade_no": order_no,
        "trade_no": trade_no,
        "trade_status": status,
        "total_amount": amount,
    }
    params["sign"] = MockGateway({"key": "mock-secret"}).sign(params)
    return params


class PaymentNotifyTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.user = make_user(self.session)
        self.package = make_package(self.session, price=30.0)
        self.order = create_order(self.session, self.user, self.package.id, payment_method="mock")
        self.order_no = self.order.order_no

    def tearDown(self):
        self.session.close()
        cleanup_users(DB.get_session(), [self.user], [self.package])

    def _order(self) -> Order:
        self.session.expire_all()
        return self.session.query(Order).filter(Order.order_no == self.order_no).first()

    def _txns(self):
        return self.session.query(PaymentTransaction).filter(PaymentTransaction.order_id == self.order.id).all()

    def test_success_and_replay(self):
        params = signed_notify(self.order_no, "30.00")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        order = self._order()
        self.assertEqual(order.status, ORDER_STATUS_PAID)
        self.assertIsNotNone(order.fulfilled_at)

        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        txns = self._txns()
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].external_transaction_id, "M-1")
        self.assertIn(self.order_no, txns[0].callback_data)

    def test_bad_signature_should_be_rejected(self):
        params = signed_notify(self.order_no, "30.00")
        params["sign"] = "0" * 64
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (400, "fail"))
        params = signed_notify(self.order_no, "30.00")
        params.pop("trade_no")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (400, "fail"))
        self.assertEqual(self._order().status, ORDER_STATUS_PENDING)

    def test_unknown_provider_should_be_rejected(self):
        params = signed_notify(self.order_no, "30.00")
        self.assertEqual(handle_gateway_notify(self.session, "nope", params), (400, "fail"))

    def test_amount_mismatch_should_keep_pending(self):
        params = signed_notify(self.order_no, "29.00")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (400, "fail"))
        self.assertEqual(self._order().status, ORDER_STATUS_PENDING)
        self.assertEqual(len([x for x in self._txns() if x.status == "success"]), 0)

    def test_non_success_status_should_be_acknowledged(self):
        params = signed_notify(self.order_no, "30.00", status=TRADE_PENDING)
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        self.assertEqual(self._order().status, ORDER_STATUS_PENDING)

    def test_unknown_order_should_be_not_found(self):
        params = signed_notify("ORD-NOT-EXIST", "30.00")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (404, "fail"))

    def test_cancelled_order_should_be_acknowledged(self):
        cancel_order(self.session, self.order_no, user_id=self.user.id)
        params = signed_notify(self.order_no, "30.00")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        self.assertEqual(self._order().status, ORDER_STATUS_CANCELLED)

    def test_recharge_notify_should_credit_balance(self):
        record = create_recharge(self.session, self.user, 50, payment_method="mock")
        params = signed_notify(record.order_no, "50.00", trade_no="M-R1")
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        self.assertEqual(handle_gateway_notify(self.session, "mock", params), (200, "success"))
        self.session.expire_all()
        user = self.session.query(User).filter(User.id == self.user.id).first()
        self.assertAlmostEqual(user.balance, 50.0, places=2)
        fresh = self.session.query(RechargeRecord).filter(RechargeRecord.id == record.id).first()
        self.assertEqual(fresh.status, RECHARGE_STATUS_PAID)
        self.assertEqual(fresh.external_transaction_id, "M-R1")

    def test_notify_without_amount_should_keep_pending(self):
        record = create_recharge(self.session, self.user, 50, payment_method="mock")
        for order_no in (self.order_no, record.order_no):
            parsed = {"order_no": order_no, "trade_no": "M-NA", "trade_status": TRADE_SUCCESS, "amount": None}
            with patch.object(MockGateway, "parse_notify", return_value=parsed):
                params = signed_notify(order_no, "30.00", trade_no="M-NA")
                self.assertEqual(handle_gateway_notify(self.session, "mock", params), (400, "fail"))
        self.assertEqual(self._order().status, ORDER_STATUS_PENDING)
        fresh = self.session.query(RechargeRecord).filter(RechargeRecord.id == record.id).first()
        self.assertEqual(fresh.status, RECHARGE_STATUS_PENDING)

    def test_create_payment_should_reuse_pending_transaction(self):
        payment = create_payment_for_order(self.session, self.order_no, "mock", user_id=self.user.id)
        self.assertEqual(payment["provider"], "mock")
        self.assertEqual(payment["amount"], 30.0)
        self.assertIn(self.order_no, payment["pay_url"])
        txns = self._txns()
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].status, "pending")
        self.assertEqual(txns[0].amount, 3000)

        handle_gateway_notify(self.session, "mock", signed_notify(self.order_no, "30.00"))
        self.session.expire_all()
        txns = self._txns()
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].status, "success")

        with self.assertRaises(ConflictError):
            create_payment_for_order(self.session, self.order_no, "mock")

    def test_create_payment_checks_owner_and_provider(self):
        with self.assertRaises(NotFoundError):
            create_payment_for_order(self.session, self.order_no, "mock", user_id="someone-else")
        with self.assertRaises(NotFoundError):
            create_payment_for_order(self.session, self.order_no, "paypal")

    def test_create_payment_should_recheck_balance_portion(self):
        user = self.session.query(User).filter(User.id == self.user.id).first()
        user.balance = 20.0
        self.session.commit()
        order = create_order(self.session, user, self.package.id, use_balance=True, balance_amount=10.0, payment_method="mock")
        user.balance = 5.0
        self.session.commit()
        with self.assertRaises(ValidationError):
            create_payment_for_order(self.session, order.order_no, "mock", user_id=self.user.id)
        user.balance = 10.0
        self.session.commit()
        payment = create_payment_for_order(self.session, order.order_no, "mock", user_id=self.user.id)
        self.assertEqual(payment["amount"], 20.0)

    def test_create_payment_for_recharge(self):
        record = create_recharge(self.session, self.user, 20, payment_method="mock")
        payment = create_payment_for_recharge(self.session, record.order_no, "mock", user_id=self.user.id)
        self.assertEqual(payment["amount"], 20.0)
        self.assertIn(record.order_no, payment["pay_url"])


class ReconcileTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.user = make_user(self.session)
        self.package = make_package(self.session, price=30.0)
        self.order = create_order(self.session, self.user, self.package.id, payment_method="mock")
        self.order.created_at = datetime.now() - timedelta(seconds=60)
        self.session.commit()

    def tearDown(self):
        self.session.close()
        cleanup_users(DB.get_session(), [self.user], [self.package])

    def test_reconcile_should_pay_order(self):
        trade = {"trade_no": "M-Q1", "trade_status": TRADE_SUCCESS, "amount": 30.0}
        with patch.object(MockGateway, "query_order", return_value=trade) as query:
            self.assertTrue(reconcile_pending_order(self.session, self.order))
            query.assert_called_once_with(self.order.order_no)
            self.assertFalse(reconcile_pending_order(self.session, self.order))
        self.session.expire_all()
        order = self.session.query(Order).filter(Order.id == self.order.id).first()
        self.assertEqual(order.status, ORDER_STATUS_PAID)
        self.assertIsNotNone(order.fulfilled_at)

    def test_reconcile_should_respect_interval(self):
        trade = {"trade_no": "", "trade_status": TRADE_PENDING, "amount": None}
        with patch.object(MockGateway, "query_order", return_value=trade) as query:
            self.assertFalse(reconcile_pending_order(self.session, self.order))
            self.assertFalse(reconcile_pending_order(self.session, self.order))
            self.assertEqual(query.call_count, 1)
        self.assertIsNotNone(self.order.last_reconciled_at)

    def test_fresh_order_should_not_be_queried(self):
        self.order.created_at = datetime.now()
        self.session.commit()
        with patch.object(MockGateway, "query_order") as query:
            self.assertFalse(reconcile_pending_order(self.session, self.order))
            query.assert_not_called()

    def test_reconcile_amount_mismatch_should_keep_pending(self):
        trade = {"trade_no": "M-Q2", "trade_status": TRADE_SUCCESS, "amount": 1.0}
        with patch.object(MockGateway, "query_order", return_value=trade):
            self.assertFalse(reconcile_pending_order(self.session, self.order))
        self.session.expire_all()
        self.assertEqual(self.session.query(Order).filter(Order.id == self.order.id).first().status, ORDER_STATUS_PENDING)

    def test_reconcile_without_amount_should_keep_pending(self):
        record = create_recharge(self.session, self.user, 15, payment_method="mock")
        record.created_at = datetime.now() - timedelta(seconds=60)
        self.session.commit()
        trade = {"trade_no": "M-Q4", "trade_status": TRADE_SUCCESS}
        with patch.object(MockGateway, "query_order", return_value=trade):
            self.assertFalse(reconcile_pending_order(self.session, self.order))
            self.assertFalse(reconcile_pending_recharge(self.session, record))
        self.session.expire_all()
        self.assertEqual(self.session.query(Order).filter(Order.id == self.order.id).first().status, ORDER_STATUS_PENDING)
        self.assertEqual(self.session.query(RechargeRecord).filter(RechargeRecord.id == record.id).first().status, RECHARGE_STATUS_PENDING)
        self.assertAlmostEqual(self.session.query(User).filter(User.id == self.user.id).first().balance, 0.0, places=2)

    def test_reconcile_recharge(self):
        record = create_recharge(self.session, self.user, 15, payment_method="mock")
        record.created_at = datetime.now() - timedelta(seconds=60)
        self.session.commit()
        trade = {"trade_no": "M-Q3", "trade_status": TRADE_SUCCESS, "amount": 15.0}
        with patch.object(MockGateway, "query_order", return_value=trade):
            self.assertTrue(reconcile_pending_recharge(self.session, record))
        self.session.expire_all()
        self.assertAlmostEqual(self.session.query(User).filter(User.id == self.user.id).first().balance, 15.0, places=2)


if __name__ == "__main__":
    unittest.main()
