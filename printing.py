# printing.py
"""
Receipt rendering for counter printers.

Both the server (PDF download) and the counter agent (thermal printer text)
render from the serialized order dict returned by `orders.order_to_dict`, so
a device never needs database access to print.
"""
import io
from collections import OrderedDict
from datetime import datetime

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

RECEIPT_WIDTH = 42


def _rule(ch="-"):
    return ch * RECEIPT_WIDTH


def _center(text):
    return str(text)[:RECEIPT_WIDTH].center(RECEIPT_WIDTH).rstrip()


def _pair(left, right):
    left = str(left)
    right = str(right)
    room = RECEIPT_WIDTH - len(right) - 1
    return f"{left[:room]:<{room}} {right}"


def _when(value):
    if not value:
        return ""
    try:
        return datetime.fromisoformat(value).strftime("%d-%m-%Y %H:%M")
    except ValueError:
        return value


def _item_label(item):
    name = item.get("name") or ""
    if item.get("size"):
        name = f"{name} ({item['size']})"
    return name


def receipt_lines(order: dict, tenant: dict) -> list:
    """Main GST receipt as fixed-width lines."""
    lines = [_center(tenant.get("name") or "")]
    if tenant.get("gstNumber"):
        lines.append(_center(f"GSTIN: {tenant['gstNumber']}"))
    if tenant.get("fssaiNumber"):
        lines.append(_center(f"FSSAI: {tenant['fssaiNumber']}"))
    lines.append(_rule("="))
    lines.append(_pair(f"Order: {order.get('orderNumber')}", _when(order.get("createdAt"))))
    if order.get("qrName") or order.get("seat"):
        lines.append(f"Screen: {order.get('qrName') or '-'}  Seat: {order.get('seat') or '-'}")
    customer = order.get("customer") or {}
    if customer.get("name"):
        lines.append(f"Customer: {customer['name']}")
    lines.append(_rule())

    for item in order.get("items") or []:
        lines.append(_pair(f"{item.get('quantity')} x {_item_label(item)}", f"{item.get('lineTotal', 0):.2f}"))
        if item.get("note"):
            lines.append(f"   * {item['note']}")

    lines.append(_rule())
    lines.append(_pair("Subtotal", f"{order.get('subtotal', 0):.2f}"))
    lines.append(_pair("CGST", f"{order.get('cgst', 0):.2f}"))
    lines.append(_pair("SGST", f"{order.get('sgst', 0):.2f}"))
    if order.get("totalDiscount"):
        lines.append(_pair("Discount", f"-{order['totalDiscount']:.2f}"))
    lines.append(_rule("="))
    lines.append(_pair("TOTAL", f"{order.get('total', 0):.2f}"))
    payment = order.get("payment") or {}
    lines.append(_pair("Paid by", (payment.get("method") or "").upper()))
    lines.append(_rule())
    lines.append(_center("Thank you! Enjoy the show"))
    return lines


def format_receipt(order: dict, tenant: dict) -> str:
    return "\n".join(receipt_lines(order, tenant)) + "\n"


def wants_category_slips(order: dict) -> bool:
    return (order.get("source") or "").lower() == "pos"


def category_slips(order: dict) -> list:
    """One kitchen slip per category, in the order categories first appear."""
    groups = OrderedDict()
    for item in order.get("items") or []:
        groups.setdefault(item.get("category") or "Other", []).append(item)

    slips = []
    for category, items in groups.items():
        lines = [
            _center(category.upper()),
            _rule("="),
            _pair(f"Order: {order.get('orderNumber')}", _when(order.get("createdAt"))),
            _rule(),
        ]
        for item in items:
            lines.append(f"{item.get('quantity'):>3} x {_item_label(item)}")
            if item.get("note"):
                lines.append(f"      * {item['note']}")
        lines.append(_rule())
        slips.append({"category": category, "text": "\n".join(lines) + "\n"})
    return slips


def receipt_pdf(order: dict, tenant: dict) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    c.setFont("Helvetica-Bold", 14)
    c.drawString(40, height - 50, tenant.get("name") or "")

    c.setFont("Helvetica", 10)
    y = height - 70
    for label, value in (("GSTIN", tenant.get("gstNumber")), ("FSSAI", tenant.get("fssaiNumber"))):
        if value:
            c.drawString(40, y, f"{label}: {value}")
            y -= 15
    c.drawString(40, y, f"Order: {order.get('orderNumber')}    {_when(order.get('createdAt'))}")
    y -= 15
    c.drawString(40, y, f"Status: {(order.get('payment') or {}).get('status')}")
    if order.get("seat"):
        y -= 15
        c.drawString(40, y, f"Screen: {order.get('qrName') or '-'}  Seat: {order.get('seat')}")

    y -= 30
    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Item")
    c.drawString(330, y, "Qty")
    c.drawString(380, y, "Unit")
    c.drawString(450, y, "Line")
    y -= 12
    c.line(40, y, 560, y)
    y -= 14

    c.setFont("Helvetica", 10)
    for item in order.get("items") or []:
        c.drawString(40, y, _item_label(item)[:45])
        c.drawRightString(360, y, str(item.get("quantity")))
        c.drawRightString(430, y, f"{item.get('unitPrice', 0):.2f}")
        c.drawRightString(560, y, f"{item.get('lineTotal', 0):.2f}")
        y -= 14
        if y < 120:
            c.showPage()
            y = height - 60
            c.setFont("Helvetica", 10)

    y -= 6
    c.line(40, y, 560, y)
    for label, key in (("Subtotal", "subtotal"), ("CGST", "cgst"), ("SGST", "sgst"), ("Discount", "totalDiscount")):
        y -= 14
        c.drawRightString(560, y, f"{label}: {order.get(key, 0):.2f}")
    y -= 16
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(560, y, f"Total: {order.get('total', 0):.2f}")

    c.showPage()
    c.save()
    buffer.seek(0)
    return buffer.read()
