"""
test_main.py
============
API tests for the Promotions Engine.

Covers:
- Catalog, campaign and rule CRUD
- Rule detail validation at authoring time
- Active-rule listing
- Cart evaluation end to end through SqlCatalog
- Error cases: unknown product, bad quantity, catalog outage
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import models
from catalog import SqlCatalog
from database import Base
from exceptions import CatalogUnavailable, ProductNotFound
from main import app, get_db
from schemas import RuleKind

# ── SQLite for tests ──
TEST_DATABASE_URL = "sqlite:///./test_promotions.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    Base.metadata.drop_all(bind=test_engine)
    app.dependency_overrides.clear()


client = TestClient(app)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

OPEN_WINDOW = {"start_at": "2020-01-01T00:00:00", "end_at": "2099-12-31T23:59:59"}


def create_product(ref="A", price="10.00", name=None):
    return client.post("/products", json={"ref": ref, "name": name or f"Product {ref}", "unit_label": "box", "price": price})


def create_campaign(status="ACTIVE", **window):
    return client.post("/campaigns", json={"name": "Summer sale", "status": status, **(window or OPEN_WINDOW)})


def create_rule(campaign_id, kind, details, code="PROMO", **extra):
    return client.post(f"/campaigns/{campaign_id}/rules", json={
        "code": code, "kind": kind, "details": details, **OPEN_WINDOW, **extra,
    })


def create_product_discount(campaign_id, magnitude=10, **details):
    return create_rule(campaign_id, "PRODUCT_DISCOUNT", {
        "apply_scope": "ALL", "discount_kind": "PERCENTAGE", "discount_magnitude": magnitude, **details,
    }, code="PD")


def create_bxgy(campaign_id, buy_ref="A", buy_min=2, gift_ref="B", **details):
    return create_rule(campaign_id, "BUY_X_GET_Y", {
        "buy_product_ref": buy_ref, "buy_min_quantity": buy_min, "gift_product_ref": gift_ref,
        "gift_discount_kind": "FREE", **details,
    }, code="BXGY")


def create_order_discount(campaign_id, magnitude=20, **details):
    return create_rule(campaign_id, "ORDER_DISCOUNT", {
        "discount_kind": "PERCENTAGE", "discount_magnitude": magnitude, **details,
    }, code="ORDER")


def evaluate(*lines):
    return client.post("/promotions/evaluate", json={
        "items": [{"product_ref": ref, "quantity": qty} for ref, qty in lines]
    })


def insert_orphan_rule(magnitude=50):
    """Store a rule whose campaign row does not exist (SQLite leaves FKs unchecked)."""
    db = TestingSessionLocal()
    try:
        row = models.PromotionRule(
            campaign_id=999,
            code="ORPHAN",
            kind="PRODUCT_DISCOUNT",
            status="ACTIVE",
            start_at=datetime(2020, 1, 1),
            end_at=datetime(2099, 12, 31),
            details={"apply_scope": "ALL", "discount_kind": "PERCENTAGE", "discount_magnitude": str(magnitude)},
        )
        db.add(row)
        db.commit()
        return row.id
    finally:
        db.close()


# ══════════════════════════════════════════════
#  Catalog Tests
# ══════════════════════════════════════════════

class TestCatalogCRUD:

    def test_create_product(self):
        resp = create_product()
        assert resp.status_code == 201
        body = resp.json()
        assert body["ref"] == "A"
        assert body["unit_label"] == "box"
        assert "id" in body

    def test_duplicate_product_rejected(self):
        create_product()
        assert create_product().status_code == 409

    def test_negative_price_rejected(self):
        assert create_product(price="-1").status_code == 422

    def test_get_product(self):
        create_product(name="Widget")
        resp = client.get("/products/A")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Widget"

    def test_get_product_not_found(self):
        resp = client.get("/products/NOPE")
        assert resp.status_code == 404
        assert "NOPE" in resp.json()["detail"]

    def test_current_price(self):
        create_product(price="12.5")
        resp = client.get("/products/A/price")
        assert resp.status_code == 200
        assert resp.json() == {"product_ref": "A", "price": "12.50"}

    def test_list_products(self):
        create_product("A")
        create_product("B")
        resp = client.get("/products")
        assert [p["ref"] for p in resp.json()] == ["A", "B"]


# ══════════════════════════════════════════════
#  Campaign and Rule Tests
# ══════════════════════════════════════════════

class TestCampaignCRUD:

    def test_create_campaign(self):
        resp = create_campaign()
        assert resp.status_code == 201
        assert resp.json()["status"] == "ACTIVE"

    def test_window_must_be_ordered(self):
        resp = create_campaign(start_at="2026-02-01T00:00:00", end_at="2026-01-01T00:00:00")
        assert resp.status_code == 422

    def test_update_campaign_status(self):
        created = create_campaign().json()
        resp = client.put(f"/campaigns/{created['id']}", json={"status": "PAUSED"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "PAUSED"

    def test_get_campaign_not_found(self):
        assert client.get("/campaigns/9999").status_code == 404


class TestRuleCRUD:

    def test_create_each_kind(self):
        campaign_id = create_campaign().json()["id"]
        for resp in (create_product_discount(campaign_id), create_bxgy(campaign_id), create_order_discount(campaign_id)):
            assert resp.status_code == 201
        kinds = [r["kind"] for r in client.get("/rules").json()]
        assert kinds == ["PRODUCT_DISCOUNT", "BUY_X_GET_Y", "ORDER_DISCOUNT"]

    def test_details_are_normalized(self):
        campaign_id = create_campaign().json()["id"]
        body = create_product_discount(campaign_id, magnitude=15).json()
        assert body["details"]["discount_magnitude"] == "15"
        assert body["details"]["min_quantity"] is None
        assert body["current_usage_count"] == 0

    def test_rule_for_missing_campaign(self):
        assert create_product_discount(9999).status_code == 404

    def test_unknown_kind(self):
        campaign_id = create_campaign().json()["id"]
        assert create_rule(campaign_id, "MYSTERY", {}).status_code == 422

    def test_percentage_over_100(self):
        campaign_id = create_campaign().json()["id"]
        assert create_product_discount(campaign_id, magnitude=110).status_code == 422

    def test_percentage_zero(self):
        campaign_id = create_campaign().json()["id"]
        assert create_order_discount(campaign_id, magnitude=0).status_code == 422

    def test_bxgy_requires_gift_product(self):
        campaign_id = create_campaign().json()["id"]
        resp = create_rule(campaign_id, "BUY_X_GET_Y", {"buy_product_ref": "A", "buy_min_quantity": 2})
        assert resp.status_code == 422

    def test_specific_scope_requires_product(self):
        campaign_id = create_campaign().json()["id"]
        assert create_product_discount(campaign_id, apply_scope="PRODUCT").status_code == 422

    def test_update_rule_details_validated(self):
        campaign_id = create_campaign().json()["id"]
        created = create_product_discount(campaign_id).json()
        bad = client.put(f"/rules/{created['id']}", json={"details": {"discount_kind": "PERCENTAGE", "discount_magnitude": 150}})
        assert bad.status_code == 422
        good = client.put(f"/rules/{created['id']}", json={"details": {"discount_kind": "FIXED_AMOUNT", "discount_magnitude": 3}})
        assert good.status_code == 200
        assert good.json()["details"]["discount_kind"] == "FIXED_AMOUNT"

    def test_update_rule_quota_must_be_positive(self):
        campaign_id = create_campaign().json()["id"]
        created = create_product_discount(campaign_id).json()
        assert client.put(f"/rules/{created['id']}", json={"max_total_usage": 0}).status_code == 422
        assert client.put(f"/rules/{created['id']}", json={"max_total_usage": -5}).status_code == 422
        resp = client.put(f"/rules/{created['id']}", json={"max_total_usage": 3})
        assert resp.status_code == 200
        assert resp.json()["max_total_usage"] == 3

    def test_delete_rule(self):
        campaign_id = create_campaign().json()["id"]
        created = create_order_discount(campaign_id).json()
        assert client.delete(f"/rules/{created['id']}").status_code == 204
        assert client.get(f"/rules/{created['id']}").status_code == 404

    def test_active_rules_excludes_paused_campaign(self):
        live = create_campaign().json()["id"]
        paused = create_campaign(status="PAUSED").json()["id"]
        create_order_discount(live)
        create_order_discount(paused)
        resp = client.get("/rules/active", params={"kind": "ORDER_DISCOUNT"})
        assert resp.status_code == 200
        assert [r["campaign"]["id"] for r in resp.json()] == [live]


# ══════════════════════════════════════════════
#  Evaluation Tests
# ══════════════════════════════════════════════

class TestEvaluate:

    def test_no_promotions(self):
        create_product(price="4.00")
        resp = evaluate(("A", 2))
        assert resp.status_code == 200
        body = resp.json()
        assert body["lines"][0]["line_total"] == "8.00"
        assert body["lines"][0]["eligible_for_gift_promotion"] is False
        assert body["summary"] == {
            "subtotal": "8.00", "order_discount": "0.00", "line_discount_total": "0.00", "grand_total": "8.00",
        }
        assert body["applied_order_promotions"] == []

    def test_product_discount(self):
        """3 x 10.00 at 10% => 27.00"""
        create_product(price="10.00")
        create_product_discount(create_campaign().json()["id"])
        body = evaluate(("A", 3)).json()
        line = body["lines"][0]
        assert line["line_total"] == "27.00"
        assert line["applied_promotion"]["rule_code"] == "PD"
        assert body["summary"]["line_discount_total"] == "3.00"

    def test_free_gift(self):
        """Buy 4 A, 'buy 2 get 1 B free' => 2 free B"""
        create_product("A", "5.00")
        create_product("B", "3.00")
        create_bxgy(create_campaign().json()["id"])
        body = evaluate(("A", 4)).json()
        purchase, gift = body["lines"]
        assert purchase["line_total"] == "20.00"
        assert purchase["eligible_for_gift_promotion"] is True
        assert gift["product_ref"] == "B"
        assert gift["quantity"] == 2
        assert gift["line_total"] == "0.00"
        assert gift["applied_promotion"]["source_line_id"] == purchase["sequence_id"]
        assert body["summary"]["subtotal"] == "26.00"
        assert body["summary"]["grand_total"] == "20.00"

    def test_order_discount_capped(self):
        """150.00 at 20% capped at 20.00 => 130.00"""
        create_product(price="30.00")
        create_order_discount(create_campaign().json()["id"], max_discount_cap=20, min_order_value=100)
        body = evaluate(("A", 5)).json()
        assert body["summary"]["order_discount"] == "20.00"
        assert body["summary"]["grand_total"] == "130.00"
        assert body["applied_order_promotions"][0]["rule_code"] == "ORDER"

    def test_paused_campaign_ignored(self):
        create_product(price="10.00")
        create_product_discount(create_campaign(status="PAUSED").json()["id"])
        body = evaluate(("A", 3)).json()
        assert body["lines"][0]["applied_promotion"] is None

    def test_pausing_campaign_stops_its_rules(self):
        create_product(price="10.00")
        campaign_id = create_campaign().json()["id"]
        rule_id = create_product_discount(campaign_id).json()["id"]
        assert evaluate(("A", 1)).json()["lines"][0]["applied_promotion"] is not None

        client.put(f"/campaigns/{campaign_id}", json={"status": "PAUSED"})
        body = evaluate(("A", 1)).json()
        assert body["lines"][0]["applied_promotion"] is None
        assert body["lines"][0]["line_total"] == "10.00"
        # The rule row itself keeps its own status
        assert client.get(f"/rules/{rule_id}").json()["status"] == "ACTIVE"

    def test_expired_rule_ignored(self):
        create_product(price="10.00")
        campaign_id = create_campaign().json()["id"]
        create_rule(campaign_id, "PRODUCT_DISCOUNT", {
            "discount_kind": "PERCENTAGE", "discount_magnitude": 10,
        }, start_at="2020-01-01T00:00:00", end_at="2020-12-31T00:00:00")
        body = evaluate(("A", 3)).json()
        assert body["lines"][0]["applied_promotion"] is None

    def test_exhausted_quota_ignored(self):
        create_product(price="10.00")
        created = create_rule(create_campaign().json()["id"], "PRODUCT_DISCOUNT", {
            "discount_kind": "PERCENTAGE", "discount_magnitude": 10,
        }, max_total_usage=1).json()
        db = TestingSessionLocal()
        db.query(models.PromotionRule).filter(models.PromotionRule.id == created["id"]).update({"current_usage_count": 1})
        db.commit()
        db.close()
        body = evaluate(("A", 3)).json()
        assert body["lines"][0]["applied_promotion"] is None

    def test_malformed_stored_rule_skipped(self):
        create_product(price="10.00")
        campaign_id = create_campaign().json()["id"]
        created = create_product_discount(campaign_id, magnitude=5).json()
        create_product_discount(campaign_id, magnitude=10)
        db = TestingSessionLocal()
        db.query(models.PromotionRule).filter(models.PromotionRule.id == created["id"]).update(
            {"details": {"discount_kind": "PERCENTAGE", "discount_magnitude": "500"}}
        )
        db.commit()
        db.close()
        resp = evaluate(("A", 1))
        assert resp.status_code == 200
        assert resp.json()["lines"][0]["line_total"] == "9.00"

    def test_rule_without_campaign_skipped(self):
        create_product(price="10.00")
        create_product_discount(create_campaign().json()["id"], magnitude=10)
        insert_orphan_rule(magnitude=50)
        resp = evaluate(("A", 1))
        assert resp.status_code == 200
        assert resp.json()["lines"][0]["line_total"] == "9.00"

    def test_zero_quantity_rejected(self):
        create_product()
        resp = evaluate(("A", 0))
        assert resp.status_code == 422
        assert "positive" in resp.json()["detail"]

    def test_unknown_product(self):
        create_product()
        resp = evaluate(("A", 1), ("NOPE", 1))
        assert resp.status_code == 404
        assert "NOPE" in resp.json()["detail"]


# ══════════════════════════════════════════════
#  SqlCatalog
# ══════════════════════════════════════════════

class TestSqlCatalog:

    def test_resolve_products_skips_unknown(self):
        create_product("A", "1.00")
        db = TestingSessionLocal()
        try:
            found = SqlCatalog(db).resolve_products(["A", "Z"])
        finally:
            db.close()
        assert list(found) == ["A"]

    def test_resolve_product_missing(self):
        db = TestingSessionLocal()
        try:
            with pytest.raises(ProductNotFound):
                SqlCatalog(db).resolve_product("Z")
        finally:
            db.close()

    def test_list_rules_drops_rule_without_campaign(self, caplog):
        kept = create_product_discount(create_campaign().json()["id"]).json()
        orphan_id = insert_orphan_rule()
        db = TestingSessionLocal()
        try:
            with caplog.at_level("WARNING", logger="catalog"):
                rules = SqlCatalog(db).list_rules(RuleKind.product_discount)
        finally:
            db.close()
        assert [r.id for r in rules] == [kept["id"]]
        assert f"Rule {orphan_id} is invalid" in caplog.text

    def test_storage_failure_becomes_catalog_unavailable(self):
        db = MagicMock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        with pytest.raises(CatalogUnavailable):
            SqlCatalog(db).list_rules(RuleKind.order_discount)
        with pytest.raises(CatalogUnavailable):
            SqlCatalog(db).resolve_products(["A"])

    def test_outage_returns_503(self, monkeypatch):
        create_product()

        def broken(self, kind):
            raise CatalogUnavailable()

        monkeypatch.setattr(SqlCatalog, "list_rules", broken)
        resp = evaluate(("A", 1))
        assert resp.status_code == 503
