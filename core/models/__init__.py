# 用户与套餐
from .user import User
from .user_level import UserLevel
from .package import Package
from .coupon import Coupon
# 订单与支付
from .order import Order
from .payment_transaction import PaymentTransaction
from .recharge_record import RechargeRecord
from .balance_entry import BalanceEntry
from .fulfillment_task import FulfillmentTask
# 订阅与设备
from .subscription import Subscription
from .device import Device
from .subscription_reset import SubscriptionReset
from .node import Node, CustomNode, UserCustomNode
# 邀请
from .invite import InviteCode, InviteRelation
# 通知
from .outbox_message import OutboxMessage
# 导入基础模型
from .base import *
