from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import Column, String, Integer, Text, JSON, BigInteger, Boolean, Numeric, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase

class Base(DeclarativeBase):
    pass

db = SQLAlchemy(model_class=Base)


def _money(value):
    # Numeric 列统一输出为字符串，避免浮点误差
    return str(value) if value is not None else None


class Profile(db.Model):
    __tablename__ = 'profiles'
    id = Column(String(64), primary_key=True)  # 与认证平台的 user id 一致
    name = Column(String(128), nullable=False, default="")
    phone_number = Column(String(32), default="")
    email = Column(String(128), nullable=True)
    points = Column(Integer, nullable=False, default=0)
    wallet_balance = Column(Numeric(12, 2), nullable=False, default=0)
    avatar_url = Column(String(512), nullable=True)  # 存储路径，不是公网链接
    account_status = Column(String(16), nullable=False, default="good")  # good/banned/warning/temporary_ban
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "phone_number": self.phone_number,
            "email": self.email,
            "points": self.points,
            "wallet_balance": _money(self.wallet_balance),
            "avatar_url": self.avatar_url,
            "account_status": self.account_status,
            "created_at": self.created_at,
        }

class UserRole(db.Model):
    __tablename__ = 'user_roles'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(16), nullable=False, default="user")  # admin / user

    __table_args__ = (
        UniqueConstraint('user_id', 'role', name='uix_user_role'),
    )

class PremiumMembership(db.Model):
    __tablename__ = 'premium_memberships'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_name = Column(String(64), default="")
    starts_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    granted_by = Column(String(64), nullable=True)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "plan_name": self.plan_name,
            "starts_at": self.starts_at,
            "expires_at": self.expires_at,
            "granted_by": self.granted_by,
        }

class PremiumPlan(db.Model):
    __tablename__ = 'premium_plans'
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    plan_type = Column(String(32), nullable=False, default="subscription")  # subscription / microtransaction
    duration_days = Column(Integer, nullable=False, default=30)
    price_mmk = Column(Numeric(12, 2), nullable=True)
    price_points = Column(Integer, nullable=False, default=0)
    badge_text = Column(String(64), nullable=True)
    is_active = Column(Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "plan_type": self.plan_type,
            "duration_days": self.duration_days,
            "price_mmk": _money(self.price_mmk),
            "price_points": self.price_points,
            "badge_text": self.badge_text,
        }

class PremiumPurchaseRequest(db.Model):
    __tablename__ = 'premium_purchase_requests'
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Integer, nullable=False)
    phone_number = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    rejection_reason = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(BigInteger, nullable=True)
    rejected_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "phone_number": self.phone_number,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "rejected_at": self.rejected_at,
            "created_at": self.created_at,
        }

class Product(db.Model):
    __tablename__ = 'products'
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    category = Column(String(64), default="", index=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    points_price = Column(Integer, nullable=True)  # 积分价，可为空
    points_value = Column(Integer, nullable=False, default=0)  # 完成后赠送积分
    stock_quantity = Column(Integer, nullable=True)  # 为空表示不限量
    is_premium = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    image_url = Column(String(512), default="")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": _money(self.price),
            "points_price": self.points_price,
            "points_value": self.points_value,
            "stock_quantity": self.stock_quantity,
            "is_premium": bool(self.is_premium),
            "is_active": bool(self.is_active),
            "image_url": self.image_url,
        }

class CartItem(db.Model):
    __tablename__ = 'cart_items'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'product_id', name='uix_cart_user_product'),
    )

class Order(db.Model):
    __tablename__ = 'orders'
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)

    # 下单时刻的价格快照（单价 x 数量），不随商品改价变化
    price = Column(Numeric(12, 2), nullable=False)

    status = Column(String(16), nullable=False, default="pending", index=True)
    payment_method = Column(String(32), nullable=False, default="cod")
    payment_proof_url = Column(String(512), nullable=True)  # payment-proofs 桶内的存储路径
    transaction_id = Column(String(6), nullable=True)

    # 配送 / 充值信息快照
    phone_number = Column(String(32), default="")
    delivery_address = Column(String(256), default="")
    game_id = Column(String(64), nullable=True)
    server_id = Column(String(32), nullable=True)
    game_name = Column(String(64), nullable=True)
    operator = Column(String(32), nullable=True)

    # 同一次提交的幂等键
    submission_key = Column(String(64), nullable=True, index=True)
    points_awarded_at = Column(BigInteger, nullable=True)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'submission_key', 'product_id', name='uix_order_submission'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": _money(self.price),
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_proof_url": self.payment_proof_url,
            "transaction_id": self.transaction_id,
            "phone_number": self.phone_number,
            "delivery_address": self.delivery_address,
            "game_id": self.game_id,
            "server_id": self.server_id,
            "game_name": self.game_name,
            "operator": self.operator,
            "points_awarded_at": self.points_awarded_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

class PointTransaction(db.Model):
    __tablename__ = 'point_transactions'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # 有符号
    transaction_type = Column(String(32), nullable=False)
    reference_id = Column(String(64), nullable=True, index=True)
    description = Column(String(256), nullable=True)
    balance_after = Column(Integer, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "transaction_type": self.transaction_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "balance_after": self.balance_after,
            "created_at": self.created_at,
        }

class WalletTransaction(db.Model):
    __tablename__ = 'wallet_transactions'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # 有符号
    transaction_type = Column(String(32), nullable=False)
    reference_id = Column(String(64), nullable=True, index=True)
    description = Column(String(256), nullable=True)
    balance_after = Column(Numeric(12, 2), nullable=True)
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": _money(self.amount),
            "transaction_type": self.transaction_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "balance_after": _money(self.balance_after),
            "created_at": self.created_at,
        }

class WalletDeposit(db.Model):
    __tablename__ = 'wallet_deposits'
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(32), nullable=False)
    screenshot_url = Column(String(512), nullable=False)  # deposit-screenshots 桶内路径
    status = Column(String(16), nullable=False, default="pending", index=True)
    admin_notes = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(BigInteger, nullable=True)
    rejected_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": _money(self.amount),
            "payment_method": self.payment_method,
            "screenshot_url": self.screenshot_url,
            "status": self.status,
            "admin_notes": self.admin_notes,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "rejected_at": self.rejected_at,
            "created_at": self.created_at,
        }

class WithdrawalSettings(db.Model):
    __tablename__ = 'withdrawal_settings'
    id = Column(Integer, primary_key=True, autoincrement=True)
    enabled = Column(Boolean, default=True)
    minimum_points = Column(Integer, nullable=False, default=0)
    exchange_rate = Column(Numeric(12, 4), nullable=False, default=1)
    terms_conditions = Column(Text, nullable=True)

class WithdrawalItem(db.Model):
    __tablename__ = 'withdrawal_items'
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    description = Column(String(256), nullable=True)
    points_required = Column(Integer, nullable=False)
    value_amount = Column(Numeric(12, 2), nullable=False, default=0)
    is_active = Column(Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "points_required": self.points_required,
            "value_amount": _money(self.value_amount),
            "is_active": bool(self.is_active),
        }

class PointWithdrawal(db.Model):
    __tablename__ = 'point_withdrawals'
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    withdrawal_item_id = Column(Integer, nullable=True)
    points_withdrawn = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "withdrawal_item_id": self.withdrawal_item_id,
            "points_withdrawn": self.points_withdrawn,
            "status": self.status,
            "created_at": self.created_at,
        }

class Report(db.Model):
    __tablename__ = 'reports'
    id = Column(String(64), primary_key=True)
    reporter_id = Column(String(64), nullable=False, index=True)
    reported_user_id = Column(String(64), nullable=False, index=True)
    message_id = Column(Integer, nullable=True)
    report_type = Column(String(16), nullable=False, default="user")  # user / message
    reason = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="pending", index=True)
    admin_action = Column(String(16), nullable=True)
    admin_notes = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "reporter_id": self.reporter_id,
            "reported_user_id": self.reported_user_id,
            "message_id": self.message_id,
            "report_type": self.report_type,
            "reason": self.reason,
            "description": self.description,
            "status": self.status,
            "admin_action": self.admin_action,
            "admin_notes": self.admin_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
            "created_at": self.created_at,
        }

class Conversation(db.Model):
    __tablename__ = 'conversations'
    id = Column(String(64), primary_key=True)
    participant1_id = Column(String(64), nullable=False, index=True)
    participant2_id = Column(String(64), nullable=False, index=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=True)

    def participants(self):
        return {self.participant1_id, self.participant2_id}

    def to_dict(self):
        return {
            "id": self.id,
            "participant1_id": self.participant1_id,
            "participant2_id": self.participant2_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

class Message(db.Model):
    __tablename__ = 'messages'
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    media_url = Column(String(512), nullable=True)  # 存储路径
    media_type = Column(String(16), nullable=True)  # image / voice
    reply_to_id = Column(Integer, nullable=True)
    transcription = Column(Text, nullable=True)
    is_deleted = Column(Boolean, default=False)
    edited_at = Column(BigInteger, nullable=True)
    read_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "content": "" if self.is_deleted else self.content,
            "media_url": None if self.is_deleted else self.media_url,
            "media_type": self.media_type,
            "reply_to_id": self.reply_to_id,
            "transcription": None if self.is_deleted else self.transcription,
            "is_deleted": bool(self.is_deleted),
            "edited_at": self.edited_at,
            "read_at": self.read_at,
            "created_at": self.created_at,
        }

class MessageReaction(db.Model):
    __tablename__ = 'message_reactions'
    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    reaction_type = Column(String(16), nullable=False, default="love")
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', name='uix_reaction_message_user'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "reaction_type": self.reaction_type,
        }

class UserPreference(db.Model):
    __tablename__ = 'user_preferences'
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    key = Column(String(64), nullable=False)
    value = Column(JSON, nullable=True)
    updated_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'key', name='uix_pref_user_key'),
    )
