"""
Authority request builders.

Pure functions from domain values to the JSON-ready dicts the Authority
expects.  Field names and fixed codes are the Authority's contract; this
module is the one place they are spelled out.

Amounts travel as JSON numbers.  They are rounded to the cent with
``round_money`` before the float conversion, so the wire value is the
stored Decimal to two places.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from fiscal_config.schema import FiscalConfiguration, PaymentMethodDef
from fiscal_engines.catalog_codes import CatalogCodes
from fiscal_engines.tax import LineBreakdown, TaxBreakdown
from fiscal_kernel.db.types import round_money
from fiscal_kernel.domain.dtos import (
    CatalogItemRequest,
    PurchaseOrder,
    SaleLineRequest,
    SaleOrder,
)
from fiscal_kernel.domain.timestamps import format_authority_date, format_authority_timestamp

IDENTITY_MAX_LENGTH = 20
WALK_IN_CUSTOMER = "Walk-in Customer"

SALE_TYPE_NORMAL = "N"
RECEIPT_TYPE_SALE = "S"
RECEIPT_TYPE_REFUND = "R"
SALE_STATUS_APPROVED = "02"
STOCK_OUT_SALE = "11"
STOCK_IN_RETURN = "03"
PURCHASE_TYPE_NORMAL = "N"
RECEIPT_TYPE_PURCHASE = "P"
PURCHASE_STATUS_CONFIRMED = "02"
REGISTRATION_MANUAL = "M"
ITEM_TYPE_FINISHED = "2"
PACKAGING_UNIT = "NT"
ORIGIN_COUNTRY = "KE"


def money(value: Decimal) -> float:
    return float(round_money(value))


def cap_identity(value: str | None, limit: int = IDENTITY_MAX_LENGTH) -> str:
    """Registrant/modifier fields are limited to 20 characters."""
    return (value or "")[:limit]


def resolve_payment_method(config: FiscalConfiguration, method: str | None) -> PaymentMethodDef:
    """
    Map a POS payment label ("cash", "M-Pesa", "05") to a configured method.

    Unknown labels fall back to the default payment code (cash).
    """
    if method:
        wanted = " ".join(method.split()).lower()
        for definition in config.payment_methods:
            if wanted == definition.code or wanted == definition.label.lower():
                return definition
            if wanted in definition.aliases:
                return definition
    for definition in config.payment_methods:
        if definition.code == config.default_payment_code:
            return definition
    raise KeyError(f"Default payment code {config.default_payment_code} is not configured")


def _identity(
    config: FiscalConfiguration,
    actor_id: str | None,
    actor_name: str | None = None,
) -> dict[str, str]:
    """Registrant and modifier fields; the name never falls back to the id."""
    registrant_id = cap_identity(actor_id or config.business.registrant_id)
    registrant_name = cap_identity(actor_name or config.business.registrant_name)
    return {
        "regrId": registrant_id,
        "regrNm": registrant_name,
        "modrId": registrant_id,
        "modrNm": registrant_name,
    }


def build_sale_payload(
    config: FiscalConfiguration,
    order: SaleOrder,
    lines: Sequence[SaleLineRequest],
    breakdown: TaxBreakdown,
    invoice_no: int,
    payment: PaymentMethodDef,
    moment: datetime,
) -> dict[str, Any]:
    """
    Build the saveTrnsSalesOsdc request.

    ``lines`` are the order lines with class code and unit code resolved,
    in the same order as ``breakdown.lines``; ``moment`` is already in
    Authority local time.
    """
    confirmed = format_authority_timestamp(moment)
    sale_date = format_authority_date(moment)
    customer = order.customer

    payload: dict[str, Any] = {
        "tin": config.authority.tin,
        "bhfId": config.authority.branch_id,
        "trdInvcNo": order.business_key,
        "invcNo": invoice_no,
        "orgInvcNo": order.original_invoice_no,
        "custTin": customer.tin,
        "custNm": customer.name or WALK_IN_CUSTOMER,
        "salesTyCd": SALE_TYPE_NORMAL,
        "rcptTyCd": RECEIPT_TYPE_REFUND if order.is_reversal else RECEIPT_TYPE_SALE,
        "pmtTyCd": payment.code,
        "salesSttsCd": SALE_STATUS_APPROVED,
        "cfmDt": confirmed,
        "salesDt": sale_date,
        "stockRlsDt": confirmed,
        "cnclReqDt": None,
        "cnclDt": None,
        "rfdDt": confirmed if order.is_reversal else None,
        "rfdRsnCd": None,
        "totItemCnt": breakdown.item_count,
    }
    payload.update(_bracket_fields(breakdown))
    payload.update(
        {
            "totTaxblAmt": money(breakdown.total_taxable),
            "totTaxAmt": money(breakdown.total_tax),
            "totAmt": money(breakdown.total_amount),
            "prchrAcptcYn": "N",
            "remark": order.remark,
            **_identity(config, order.cashier, order.cashier_name),
            "receipt": {
                "custTin": customer.tin,
                "custMblNo": customer.mobile,
                "rptNo": invoice_no,
                "rcptPbctDt": confirmed,
                "trdeNm": config.business.name,
                "adrs": config.business.address,
                "topMsg": config.business.commercial_message,
                "btmMsg": config.business.closing_message,
                "prchrAcptcYn": "N",
            },
            "itemList": [
                _sale_item(request, line)
                for request, line in zip(lines, breakdown.lines)
            ],
        }
    )
    return payload


def _bracket_fields(breakdown: TaxBreakdown) -> dict[str, float]:
    fields: dict[str, float] = {}
    for amounts in breakdown.brackets:
        fields[f"taxblAmt{amounts.bracket}"] = money(amounts.taxable_amount)
    for amounts in breakdown.brackets:
        fields[f"taxRt{amounts.bracket}"] = float(amounts.rate * 100)
    for amounts in breakdown.brackets:
        fields[f"taxAmt{amounts.bracket}"] = money(amounts.tax_amount)
    return fields


def _sale_item(request: SaleLineRequest, line: LineBreakdown) -> dict[str, Any]:
    return {
        "itemSeq": line.seq,
        "itemCd": line.item_code,
        "itemClsCd": request.item_class_code,
        "itemNm": line.name,
        "bcd": request.barcode,
        "pkgUnitCd": PACKAGING_UNIT,
        "pkg": 1,
        "qtyUnitCd": request.unit_code,
        "qty": float(line.quantity),
        "prc": money(line.unit_price),
        "splyAmt": money(line.original_amount),
        # Undefined for zero-price lines; the Authority expects a number.
        "dcRt": float(line.discount_rate) if line.discount_rate is not None else 0.0,
        "dcAmt": money(line.discount_amount),
        "isrccCd": None,
        "isrccNm": None,
        "isrcRt": None,
        "isrcAmt": None,
        "taxTyCd": line.tax_bracket,
        "taxblAmt": money(line.taxable_amount),
        "taxAmt": money(line.tax_amount),
        "totAmt": money(line.total_amount),
    }


def build_purchase_payload(
    config: FiscalConfiguration,
    order: PurchaseOrder,
    lines: Sequence[SaleLineRequest],
    breakdown: TaxBreakdown,
    purchase_no: int,
    payment: PaymentMethodDef,
    moment: datetime,
) -> dict[str, Any]:
    """
    Build the insertTrnsPurchase request for one supplier invoice.

    ``invcNo`` is our own purchase number; the supplier's invoice number
    travels in ``spplrInvcNo``.  Purchases are confirmed and warehoused on
    reporting, so both dates are ``moment``.
    """
    confirmed = format_authority_timestamp(moment)
    supplier = order.supplier
    payload: dict[str, Any] = {
        "tin": config.authority.tin,
        "bhfId": config.authority.branch_id,
        "invcNo": purchase_no,
        "orgInvcNo": 0,
        "spplrTin": supplier.tin,
        "spplrBhfId": supplier.branch_id,
        "spplrNm": supplier.name,
        "spplrInvcNo": order.supplier_invoice_no,
        "regTyCd": REGISTRATION_MANUAL,
        "pchsTyCd": PURCHASE_TYPE_NORMAL,
        "rcptTyCd": RECEIPT_TYPE_PURCHASE,
        "pmtTyCd": payment.code,
        "pchsSttsCd": PURCHASE_STATUS_CONFIRMED,
        "cfmDt": confirmed,
        "pchsDt": format_authority_date(moment),
        "wrhsDt": confirmed,
        "cnclReqDt": None,
        "cnclDt": None,
        "rfdDt": None,
        "totItemCnt": breakdown.item_count,
    }
    payload.update(_bracket_fields(breakdown))
    payload.update(
        {
            "totTaxblAmt": money(breakdown.total_taxable),
            "totTaxAmt": money(breakdown.total_tax),
            "totAmt": money(breakdown.total_amount),
            "remark": order.remark,
            **_identity(config, order.registrant, order.registrant_name),
            "itemList": [
                {
                    **_sale_item(request, line),
                    "spplrItemClsCd": None,
                    "spplrItemCd": None,
                    "spplrItemNm": None,
                    "itemExprDt": None,
                }
                for request, line in zip(lines, breakdown.lines)
            ],
        }
    )
    return payload


def build_item_payload(
    config: FiscalConfiguration,
    request: CatalogItemRequest,
    item_code: str,
    codes: CatalogCodes,
) -> dict[str, Any]:
    """Build the saveItem request for one catalog entry."""
    return {
        "tin": config.authority.tin,
        "bhfId": config.authority.branch_id,
        "itemCd": item_code,
        "itemClsCd": codes.item_class_code,
        "itemTyCd": config.item_code.item_type or ITEM_TYPE_FINISHED,
        "itemNm": request.name,
        "itemStdNm": request.name,
        "orgnNatCd": config.item_code.country or ORIGIN_COUNTRY,
        "pkgUnitCd": config.item_code.packaging or PACKAGING_UNIT,
        "qtyUnitCd": codes.unit_code,
        "taxTyCd": codes.tax_bracket,
        "btchNo": None,
        "bcd": None,
        "dftPrc": money(request.cost),
        "grpPrcL1": money(request.cost),
        "addInfo": None,
        "sftyQty": None,
        "isrcAplcbYn": "N",
        "useYn": "Y",
        **_identity(config, request.registrant, request.registrant_name),
    }


def build_stock_release_payload(
    config: FiscalConfiguration,
    sale_payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Build the insertStockIO request that releases the stock a sale used.

    Built from the sale request itself, so a replayed sale releases exactly
    the quantities the Authority accepted.  A refund returns the stock
    instead, referencing the reversed invoice.
    """
    refund = sale_payload.get("rcptTyCd") == RECEIPT_TYPE_REFUND
    items = []
    for item in sale_payload.get("itemList", []):
        items.append(
            {
                "itemSeq": item["itemSeq"],
                "itemCd": item["itemCd"],
                "itemClsCd": item.get("itemClsCd"),
                "itemNm": item["itemNm"],
                "bcd": item.get("bcd"),
                "pkgUnitCd": item.get("pkgUnitCd", PACKAGING_UNIT),
                "pkg": item.get("pkg", 1),
                "qtyUnitCd": item.get("qtyUnitCd"),
                "qty": item["qty"],
                "itemExprDt": None,
                "prc": item["prc"],
                "splyAmt": item["splyAmt"],
                "totDcAmt": item.get("dcAmt", 0.0),
                "taxblAmt": item["taxblAmt"],
                "taxTyCd": item["taxTyCd"],
                "taxAmt": item["taxAmt"],
                "totAmt": item["totAmt"],
            }
        )
    return {
        "tin": config.authority.tin,
        "bhfId": config.authority.branch_id,
        "sarNo": sale_payload["invcNo"],
        "orgSarNo": sale_payload.get("orgInvcNo", 0) if refund else 0,
        "regTyCd": "M",
        "custTin": sale_payload.get("custTin"),
        "custNm": sale_payload.get("custNm"),
        "custBhfId": None,
        "sarTyCd": STOCK_IN_RETURN if refund else STOCK_OUT_SALE,
        "ocrnDt": sale_payload["salesDt"],
        "totItemCnt": len(items),
        "totTaxblAmt": sale_payload["totTaxblAmt"],
        "totTaxAmt": sale_payload["totTaxAmt"],
        "totAmt": sale_payload["totAmt"],
        "remark": sale_payload.get("remark"),
        "regrId": sale_payload.get("regrId"),
        "regrNm": sale_payload.get("regrNm"),
        "modrId": sale_payload.get("modrId"),
        "modrNm": sale_payload.get("modrNm"),
        "itemList": items,
    }
