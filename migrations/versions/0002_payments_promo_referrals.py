"""Saved cards, promo codes, referrals; ride discount and user referral columns"""
from alembic import op
import sqlalchemy as sa

revision = "0002_payments_promo_referrals"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(20), nullable=False, server_default="card"),
        sa.Column("provider", sa.String(30), nullable=False, server_default="psp"),
        sa.Column("provider_payment_method_id", sa.String(255), nullable=False),
        sa.Column("last_four", sa.String(4), nullable=True),
        sa.Column("brand", sa.String(30), nullable=True),
        sa.Column("exp_month", sa.Integer, nullable=True),
        sa.Column("exp_year", sa.Integer, nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_payment_methods_user", "payment_methods", ["user_id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), unique=True, nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("discount_type", sa.String(20), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("min_ride_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="MAD"),
        sa.Column("max_uses", sa.Integer, nullable=True),
        sa.Column("current_uses", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_uses_per_user", sa.Integer, nullable=False, server_default="1"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_first_ride_only", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.add_column("rides", sa.Column("promo_code_id", sa.Integer, sa.ForeignKey("promo_codes.id"), nullable=True))
    op.add_column("rides", sa.Column("discount_amount", sa.Numeric(10, 2), nullable=True))

    op.create_table(
        "promo_code_uses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("promo_code_id", sa.Integer, sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("discount_applied", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ride_id", name="uq_promo_code_uses_ride"),
    )
    op.create_index("idx_promo_code_uses_promo", "promo_code_uses", ["promo_code_id"])
    op.create_index("idx_promo_code_uses_user", "promo_code_uses", ["user_id"])

    op.add_column("users", sa.Column("referral_code", sa.String(20), nullable=True))
    op.add_column("users", sa.Column("referred_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True))
    op.create_unique_constraint("uq_users_referral_code", "users", ["referral_code"])

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("referrer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("referred_id", sa.Integer, sa.ForeignKey("users.id"), unique=True, nullable=False),
        sa.Column("referral_code", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("referrer_bonus", sa.Numeric(10, 2), nullable=False),
        sa.Column("referred_bonus", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="MAD"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_referrals_referrer", "referrals", ["referrer_id"])
    op.create_index("idx_referrals_status", "referrals", ["status"])


def downgrade() -> None:
    op.drop_table("referrals")
    op.drop_constraint("uq_users_referral_code", "users", type_="unique")
    op.drop_column("users", "referred_by")
    op.drop_column("users", "referral_code")
    op.drop_table("promo_code_uses")
    op.drop_column("rides", "discount_amount")
    op.drop_column("rides", "promo_code_id")
    op.drop_table("promo_codes")
    op.drop_index("idx_payment_methods_user", "payment_methods")
    op.drop_table("payment_methods")
