from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as SchemaError

import catalog
import coupons
from errors import NotFound, ValidationError
from schemas import CouponIn, CouponRuleIn, CouponUpdate, ProductCreate, ProductUpdate


# ============================================================================
# PRODUCTS
# ============================================================================


def test_create_product_and_reject_duplicate_slug(db):
    created = catalog.create_product(ProductCreate(product_id=" SPRAY-100 ", name="Spray", price_cents=1790, stock_qty=3))

    assert created["product_id"] == "SPRAY-100"
    assert created["sort_order"] == 9999
    with pytest.raises(ValidationError) as exc:
        catalog.create_product(ProductCreate(product_id="SPRAY-100", name="Again", price_cents=1, stock_qty=1))
    assert exc.value.errors == {"product_id": "product_id already exists"}


def test_product_input_validation():
    with pytest.raises(SchemaError):
        ProductCreate(product_id="X", name="X", price_cents=1000, compare_at_price_cents=900, stock_qty=1)
    with pytest.raises(SchemaError):
        ProductCreate(product_id="X", name="X", price_cents=-1, stock_qty=1)
    with pytest.raises(SchemaError):
        ProductCreate(product_id="X", name="X", price_cents=1, stock_qty=1, image_url="ftp://cdn/x.png")


def test_update_product_partial(make_product):
    product = make_product("SIERO-30", 2490, stock_qty=4, compare_at_price_cents=2990, sort_order=2)

    updated = catalog.update_product(str(product["_id"]), ProductUpdate(stock_qty=9, sort_order=None))

    assert updated["stock_qty"] == 9
    assert updated["sort_order"] == 9999
    assert updated["price_cents"] == 2490
    assert updated["compare_at_price_cents"] == 2990


def test_update_product_rejects_slug_change_and_nulls(make_product):
    make_product("SIERO-30", 2490)

    with pytest.raises(ValidationError) as exc:
        catalog.update_product("SIERO-30", ProductUpdate(product_id="NEW"))
    assert "product_id" in exc.value.errors

    with pytest.raises(ValidationError) as exc:
        catalog.update_product("SIERO-30", ProductUpdate(price_cents=None, name=" "))
    assert set(exc.value.errors) == {"price_cents", "name"}


def test_update_product_checks_final_compare_at_price(make_product):
    make_product("SIERO-30", 2490, compare_at_price_cents=2990)

    with pytest.raises(ValidationError) as exc:
        catalog.update_product("SIERO-30", ProductUpdate(price_cents=3000))
    assert "compare_at_price_cents" in exc.value.errors

    updated = catalog.update_product("SIERO-30", ProductUpdate(price_cents=3000, compare_at_price_cents=None))
    assert updated["compare_at_price_cents"] is None


def test_soft_and_hard_delete(make_product):
    make_product("SPRAY-100", 1790)

    catalog.soft_delete_product("SPRAY-100")

    assert catalog.list_active_products() == []
    with pytest.raises(NotFound):
        catalog.get_active_product("SPRAY-100")
    assert catalog.admin_get_product("SPRAY-100")["is_active"] is False

    catalog.hard_delete_product("SPRAY-100")
    with pytest.raises(NotFound):
        catalog.admin_get_product("SPRAY-100")
    with pytest.raises(NotFound):
        catalog.hard_delete_product("SPRAY-100")


def test_storefront_order_and_admin_search(make_product):
    make_product("B", 100, name="Balsamo", sort_order=2)
    make_product("A", 100, name="Shampoo", sort_order=1)
    make_product("C", 100, name="Crema", sort_order=2)

    assert [p["product_id"] for p in catalog.list_active_products()] == ["A", "B", "C"]

    page = catalog.admin_list_products(page=2, limit=2)
    assert (page["total"], page["pages"], len(page["products"])) == (3, 2, 1)
    assert [p["name"] for p in catalog.admin_list_products(q="crem")["products"]] == ["Crema"]


def test_find_active_products_by_id_or_slug(make_product):
    spray = make_product("SPRAY-100", 1790)
    make_product("OFF", 100, is_active=False)

    found = catalog.find_active_products([str(spray["_id"]), " spray-100", "OFF", "GHOST"])

    assert set(found) == {str(spray["_id"]), "spray-100"}
    assert found["spray-100"]["_id"] == spray["_id"]


def test_reserve_stock_is_conditional(db, make_product):
    product = make_product("SPRAY-100", 1790, stock_qty=2)

    assert catalog.reserve_stock(product["_id"], 2)
    assert not catalog.reserve_stock(product["_id"], 1)
    assert catalog.current_stock(product["_id"]) == 0


# ============================================================================
# COUPONS
# ============================================================================


def test_create_coupon_binds_rules_to_slugs(make_product):
    spray = make_product("SPRAY-100", 1790)
    make_product("SIERO-30", 2490)

    coupon = coupons.create_coupon(CouponIn(code=" estate25 ", rules=[
        CouponRuleIn(product_id=str(spray["_id"]), type="percent", value=25),
        CouponRuleIn(product_id="SIERO-30", type="fixed", value=2.5),
    ]))

    assert coupon["code"] == "ESTATE25"
    assert coupon["rules"] == [
        {"product_id": "SPRAY-100", "type": "percent", "value": 25},
        {"product_id": "SIERO-30", "type": "fixed", "value": 3},
    ]


def test_create_coupon_rule_errors_are_indexed(make_product):
    make_product("SPRAY-100", 1790)

    with pytest.raises(ValidationError) as exc:
        coupons.create_coupon(CouponIn(code="BAD10", rules=[
            CouponRuleIn(product_id="SPRAY-100", type="percent", value=10),
            CouponRuleIn(product_id="SPRAY-100", type="fixed", value=100),
            CouponRuleIn(product_id="GHOST", type="fixed", value=100),
        ]))

    assert set(exc.value.errors["rules"]) == {"1", "2"}


def test_duplicate_coupon_code(make_product):
    make_product("SPRAY-100", 1790)
    rules = [CouponRuleIn(product_id="SPRAY-100", type="percent", value=10)]
    coupons.create_coupon(CouponIn(code="WELCOME10", rules=rules))

    with pytest.raises(ValidationError) as exc:
        coupons.create_coupon(CouponIn(code="welcome10", rules=rules))
    assert exc.value.errors == {"code": "code already exists"}


def test_coupon_input_validation():
    rule = {"product_id": "SPRAY-100", "type": "percent", "value": 10}
    with pytest.raises(SchemaError):
        CouponIn(code="X", rules=[rule])
    with pytest.raises(SchemaError):
        CouponIn(code="EMPTY1", rules=[])
    with pytest.raises(SchemaError):
        CouponIn(code="WIN10", rules=[rule], starts_at=datetime(2025, 2, 1), ends_at=datetime(2025, 1, 1))
    with pytest.raises(SchemaError):
        CouponRuleIn(product_id="SPRAY-100", type="percent", value=120)


def test_update_coupon_checks_merged_window(make_product):
    make_product("SPRAY-100", 1790)
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    coupon = coupons.create_coupon(CouponIn(
        code="WIN10", starts_at=start, rules=[CouponRuleIn(product_id="SPRAY-100", type="percent", value=10)]
    ))

    with pytest.raises(ValidationError) as exc:
        coupons.update_coupon(coupon["id"], CouponUpdate(ends_at=start - timedelta(days=1)))
    assert "ends_at" in exc.value.errors

    updated = coupons.update_coupon(coupon["id"], CouponUpdate(name=" Inverno ", is_active=False))
    assert updated["name"] == "Inverno"
    assert updated["is_active"] is False


def test_update_coupon_code_must_stay_unique(make_product):
    make_product("SPRAY-100", 1790)
    rules = [CouponRuleIn(product_id="SPRAY-100", type="percent", value=10)]
    coupons.create_coupon(CouponIn(code="ONE10", rules=rules))
    two = coupons.create_coupon(CouponIn(code="TWO10", rules=rules))

    with pytest.raises(ValidationError) as exc:
        coupons.update_coupon(two["id"], CouponUpdate(code="one10"))
    assert exc.value.errors == {"code": "code already exists"}


def test_list_get_delete_coupon(make_product):
    make_product("SPRAY-100", 1790)
    rules = [CouponRuleIn(product_id="SPRAY-100", type="percent", value=10)]
    summer = coupons.create_coupon(CouponIn(code="SUMMER10", name="Estate", rules=rules))
    coupons.create_coupon(CouponIn(code="WINTER10", rules=rules))

    assert coupons.list_coupons()["total"] == 2
    assert [c["code"] for c in coupons.list_coupons(q="estate")["coupons"]] == ["SUMMER10"]
    assert coupons.get_coupon(summer["id"])["code"] == "SUMMER10"

    assert coupons.delete_coupon(summer["id"]) == {"ok": True}
    with pytest.raises(NotFound):
        coupons.delete_coupon(summer["id"])
    with pytest.raises(NotFound):
        coupons.get_coupon("nope")


def test_find_active_coupon_window(make_coupon):
    now = datetime(2025, 6, 15, tzinfo=timezone.utc)
    make_coupon("JUNE10", starts_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
                ends_at=datetime(2025, 6, 30, tzinfo=timezone.utc))

    assert coupons.find_active_coupon("june10", now=now)["code"] == "JUNE10"
    assert coupons.find_active_coupon("JUNE10", now=datetime(2025, 7, 1, tzinfo=timezone.utc)) is None
    assert coupons.find_active_coupon("??", now=now) is None
