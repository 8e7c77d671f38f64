from dataclasses import replace

import pytest
from sqlalchemy import select

from stockbridge.db import LedgerEntry, StockLevel
from stockbridge.domain import Direction, Platform
from stockbridge.errors import PlatformError, PlatformTimeout, PlatformUnavailable
from stockbridge.services import stock
from stockbridge.services.identity import IdentityResolver
from stockbridge.services.ledger import has_processed
from stockbridge.services.reconciler import (
    PosSaleWriter,
    PosStockWriter,
    Reconciler,
    StoreStockWriter,
    make_writer,
)

from tests.fakes import make_change, pos_product, store_product


def _seed(ctx, sku, qty):
    stock.seed_level(ctx.session, ctx.connection_id, sku, qty, Platform.STORE)
    ctx.session.commit()


def _qty(ctx, sku):
    ctx.session.expire_all()
    level = stock.get_level(ctx.session, ctx.connection_id, sku)
    return None if level is None else level.quantity


def _to_pos(ctx):
    return Reconciler(ctx, IdentityResolver(ctx, Platform.POS), make_writer(ctx, Platform.POS))


def _to_store(ctx):
    return Reconciler(ctx, IdentityResolver(ctx, Platform.STORE), make_writer(ctx, Platform.STORE))


@pytest.fixture
def catalog(pos):
    pos.products = [
        pos_product(11, "ABC"),
        pos_product(12, "DEF", type_="variable", nested=[[None, 501]]),
        pos_product(13, "GHI"),
    ]
    return pos


def test_order_deducts_mirror_and_records_ledger(ctx, catalog):
    _seed(ctx, "ABC", 10)

    res = _to_pos(ctx).reconcile(make_change(source_id="1001", items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert (res.processed, res.success, res.stock_moved, res.errors) == (1, 1, 3, [])
    assert _qty(ctx, "ABC") == 7
    assert has_processed(ctx.session, Platform.STORE, "1001")
    assert len(catalog.created) == 1
    sale = catalog.created[0]
    assert sale["invoice_no"] == "WC-1001"
    assert sale["location_id"] == 7
    assert sale["products"] == [{"product_id": 11, "variation_id": 11, "quantity": 3, "unit_price": 10.0}]


def test_replay_is_skipped_without_touching_stock(ctx, catalog):
    _seed(ctx, "ABC", 10)
    rec = _to_pos(ctx)
    change = make_change(source_id="1001", items=[("ABC", 3)])
    rec.reconcile(change, Direction.STORE_TO_POS)

    res = rec.reconcile(change, Direction.STORE_TO_POS)

    assert (res.processed, res.success, res.skipped, res.errors) == (1, 0, 1, [])
    assert res.status == "skipped"
    assert _qty(ctx, "ABC") == 7
    assert len(catalog.created) == 1


def test_deduction_is_clamped_to_stock_on_hand(ctx, catalog):
    _seed(ctx, "ABC", 2)

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert res.stock_moved == 2
    assert _qty(ctx, "ABC") == 0
    assert len(res.warnings) == 1 and "clamped" in res.warnings[0]
    assert catalog.created[0]["products"][0]["quantity"] == 2


def test_zero_stock_warns_but_still_succeeds(ctx, catalog):
    _seed(ctx, "ABC", 0)

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert res.stock_moved == 0
    assert "insufficient stock" in res.warnings[0]
    assert catalog.created == []
    assert has_processed(ctx.session, Platform.STORE, "1001")


def test_unmatched_item_does_not_block_the_rest(ctx, catalog):
    _seed(ctx, "ABC", 10)
    _seed(ctx, "DEF", 5)

    change = make_change(items=[("ABC", 1), ("NOPE", 4), ("DEF", 2)])
    res = _to_pos(ctx).reconcile(change, Direction.STORE_TO_POS)

    assert res.success == 1
    assert res.stock_moved == 3
    assert len(res.errors) == 1 and "NOPE" in res.errors[0]
    assert _qty(ctx, "ABC") == 9
    assert _qty(ctx, "DEF") == 3
    lines = catalog.created[0]["products"]
    assert [(line["product_id"], line["variation_id"]) for line in lines] == [(11, 11), (12, 501)]


def test_all_items_unmatched_is_an_error_and_not_journaled(ctx, catalog):
    res = _to_pos(ctx).reconcile(make_change(items=[("NOPE", 1), ("ALSO-NOPE", 2)]), Direction.STORE_TO_POS)

    assert res.status == "error"
    assert res.success == 0
    assert len(res.errors) == 2
    assert "NOPE" in res.errors[0] and "ALSO-NOPE" in res.errors[1]
    assert not has_processed(ctx.session, Platform.STORE, "1001")


def test_record_without_line_items_is_an_error(ctx, catalog):
    res = _to_pos(ctx).reconcile(make_change(items=[]), Direction.STORE_TO_POS)

    assert res.status == "error"
    assert res.errors == ["STORE 1001: no line items"]


def test_partial_match_status_is_success(ctx, catalog):
    _seed(ctx, "ABC", 10)

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 1), ("NOPE", 1)]), Direction.STORE_TO_POS)

    assert res.status == "success"
    assert len(res.errors) == 1


def test_blank_sku_is_reported_per_item(ctx, catalog):
    _seed(ctx, "ABC", 10)

    res = _to_pos(ctx).reconcile(make_change(items=[("", 1), ("ABC", 1)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert len(res.errors) == 1 and "no SKU" in res.errors[0]


def test_rejected_sale_rolls_back_mirror(ctx, catalog):
    _seed(ctx, "ABC", 10)
    catalog.sale_error = PlatformError("POS", "validation failed", 422)
    rec = _to_pos(ctx)

    res = rec.reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 0
    assert "stock write failed" in res.errors[0]
    assert _qty(ctx, "ABC") == 10
    assert not has_processed(ctx.session, Platform.STORE, "1001")

    catalog.sale_error = None
    res = rec.reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)
    assert res.success == 1
    assert _qty(ctx, "ABC") == 7


def test_timeout_marks_record_as_error(ctx, catalog):
    _seed(ctx, "ABC", 10)
    catalog.sale_error = PlatformTimeout("POS", "POST sell timed out after 15s")

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 0
    assert len(res.errors) == 1
    assert _qty(ctx, "ABC") == 10


def test_unavailable_target_propagates_and_leaves_no_trace(ctx, catalog):
    _seed(ctx, "ABC", 10)
    catalog.sale_error = PlatformUnavailable("POS", "cannot reach host")

    with pytest.raises(PlatformUnavailable):
        _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert _qty(ctx, "ABC") == 10
    assert not has_processed(ctx.session, Platform.STORE, "1001")


def test_duplicate_invoice_counts_as_applied(ctx, catalog):
    _seed(ctx, "ABC", 10)
    catalog.sale_error = PlatformError("POS", "sell rejected: The invoice no has already been taken")

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 1
    entry = ctx.session.execute(select(LedgerEntry)).scalar_one()
    assert entry.target_reference == "WC-1001"
    assert _qty(ctx, "ABC") == 7


def test_missing_mirror_row_is_seeded_from_pos_report(ctx, catalog):
    catalog.stock = {"11": 8}

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 1
    level = stock.get_level(ctx.session, ctx.connection_id, "ABC")
    assert level.quantity == 5
    assert level.seeded_from == "POS"


def test_same_sku_twice_in_one_record_uses_one_row(ctx, catalog):
    catalog.stock = {"11": 4}

    res = _to_pos(ctx).reconcile(make_change(items=[("ABC", 3), ("ABC", 3)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert res.stock_moved == 4
    rows = ctx.session.execute(select(StockLevel).where(StockLevel.sku == "ABC")).scalars().all()
    assert len(rows) == 1 and rows[0].quantity == 0


def test_pos_sale_sets_store_stock_from_mirror(ctx, store):
    store.products = [store_product(21, "ABC", stock=10), store_product(22, "TSHIRT", type_="variable")]
    store.variations = {22: [{"id": 221, "sku": "TSHIRT-M", "stock_quantity": 4}]}
    _seed(ctx, "ABC", 10)

    change = make_change(platform=Platform.POS, source_id="77", items=[("ABC", 2), ("TSHIRT-M", 1)])
    res = _to_store(ctx).reconcile(change, Direction.POS_TO_STORE)

    assert res.success == 1
    assert res.stock_moved == 3
    assert store.stock_writes == [("21", 8, None), ("22", 3, "221")]
    assert stock.get_level(ctx.session, ctx.connection_id, "TSHIRT-M").seeded_from == "STORE"


def test_partial_store_write_failure_keeps_accepted_items(ctx, store):
    store.products = [store_product(21, "ABC", stock=10), store_product(23, "XYZ", stock=5)]
    store.set_stock_errors = {"23": PlatformError("STORE", "product is locked", 400)}

    change = make_change(platform=Platform.POS, source_id="78", items=[("ABC", 1), ("XYZ", 1)])
    res = _to_store(ctx).reconcile(change, Direction.POS_TO_STORE)

    assert res.success == 1
    assert res.stock_moved == 1
    assert len(res.errors) == 1 and "XYZ" in res.errors[0]
    assert _qty(ctx, "ABC") == 9
    assert _qty(ctx, "XYZ") == 5


def test_stock_mode_overwrites_pos_quantity(ctx, catalog):
    ctx.settings = replace(ctx.settings, pos_stock_write_mode="stock")
    _seed(ctx, "ABC", 10)

    writer = make_writer(ctx, Platform.POS)
    assert isinstance(writer, PosStockWriter)
    res = Reconciler(ctx, IdentityResolver(ctx, Platform.POS), writer).reconcile(
        make_change(items=[("ABC", 4)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert catalog.stock_updates == [("11", 6, None)]
    assert catalog.created == []


def test_stock_mode_targets_the_resolved_variation(ctx, catalog):
    ctx.settings = replace(ctx.settings, pos_stock_write_mode="stock")
    _seed(ctx, "DEF", 5)

    res = _to_pos(ctx).reconcile(make_change(items=[("DEF", 2)]), Direction.STORE_TO_POS)

    assert res.success == 1
    assert catalog.stock_updates == [("12", 3, "501")]


def test_writer_selection(ctx):
    assert isinstance(make_writer(ctx, Platform.STORE), StoreStockWriter)
    assert isinstance(make_writer(ctx, Platform.POS), PosSaleWriter)
