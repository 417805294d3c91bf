"""
Tests for ORM models and the initial migration.
"""

from pathlib import Path

from sqlalchemy import CheckConstraint, inspect

from settlement.db.migration_runner import ALEMBIC_INI_PATH, get_sync_database_url
from settlement.db.models import ContentPurchase, CreatorBalance
from settlement.models.api import PurchaseStatus

# Get project root from test file location
PROJECT_ROOT = Path(__file__).parent.parent
MIGRATION_FILE = (
    PROJECT_ROOT / "alembic" / "versions" / "2026_10_19_0000-initial_settlement_schema.py"
)


def constraint_names(model: type) -> set[str]:
    return {
        c.name for c in model.__table__.constraints if isinstance(c, CheckConstraint) and c.name
    }


class TestContentPurchaseModel:
    """Tests for ContentPurchase ORM model definition."""

    def test_model_tablename(self):
        assert ContentPurchase.__tablename__ == "content_purchases"

    def test_money_columns_are_bigint(self):
        """Amounts are whole minor units."""
        columns = {col.key: col for col in inspect(ContentPurchase).columns}

        for name in ("amount", "creator_revenue", "platform_fee"):
            assert str(columns[name].type) == "BIGINT"

    def test_payment_id_length(self):
        """Gateway payment IDs are limited to 40 characters."""
        columns = {col.key: col for col in inspect(ContentPurchase).columns}

        assert columns["payment_id"].type.length == 40  # type: ignore[attr-defined]
        assert columns["payment_id"].unique

    def test_status_check_lists_every_status(self):
        status_check = next(
            c
            for c in ContentPurchase.__table__.constraints
            if isinstance(c, CheckConstraint) and c.name == "ck_purchase_status_valid"
        )

        for status in PurchaseStatus:
            assert f"'{status.value}'" in str(status_check.sqltext)

    def test_partial_unique_indexes(self):
        """At most one pending and one completed purchase per buyer and content."""
        indexes = {index.name: index for index in ContentPurchase.__table__.indexes}

        for name in ("uq_purchase_one_pending_per_buyer", "uq_purchase_one_completed_per_buyer"):
            index = indexes[name]
            assert index.unique
            assert [col.name for col in index.columns] == ["content_id", "buyer_id"]
            assert index.dialect_options["postgresql"]["where"] is not None

    def test_split_constraints(self):
        assert {
            "ck_purchase_amount_non_negative",
            "ck_purchase_split_non_negative",
            "ck_purchase_split_matches_amount",
        } <= constraint_names(ContentPurchase)


class TestCreatorBalanceModel:
    """Tests for CreatorBalance ORM model definition."""

    def test_primary_key_is_creator(self):
        pk_columns = [col.key for col in inspect(CreatorBalance).primary_key]

        assert pk_columns == ["creator_id"]

    def test_accounting_identity_enforced(self):
        assert "ck_balance_accounting_identity" in constraint_names(CreatorBalance)


class TestInitialMigration:
    """Tests for the initial migration file."""

    def test_migration_exists(self):
        assert MIGRATION_FILE.exists()
        assert ALEMBIC_INI_PATH.exists()

    def test_migration_matches_model_constraints(self):
        """Every named constraint on the models is created by the migration."""
        source = MIGRATION_FILE.read_text()

        for name in constraint_names(ContentPurchase) | constraint_names(CreatorBalance):
            assert name in source, f"Missing constraint in migration: {name}"
        for index in ContentPurchase.__table__.indexes:
            assert index.name in source, f"Missing index in migration: {index.name}"

    def test_migration_is_root(self):
        source = MIGRATION_FILE.read_text()

        assert "down_revision: Union[str, None] = None" in source


class TestSyncDatabaseUrl:
    """Tests for the migration URL conversion."""

    def test_asyncpg_converted(self):
        assert (
            get_sync_database_url("postgresql+asyncpg://u:p@db:5432/settlement")
            == "postgresql+psycopg2://u:p@db:5432/settlement"
        )

    def test_plain_url_unchanged(self):
        assert get_sync_database_url("postgresql://u:p@db/settlement") == (
            "postgresql://u:p@db/settlement"
        )
