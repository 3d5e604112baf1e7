import io
import logging
import os
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from timebill import config, schemas

logger = logging.getLogger(__name__)

# --- Constants ---
BASE_DIR = os.path.dirname(__file__)
FONT_PATH = os.path.join(BASE_DIR, 'DejaVuSans.ttf')
TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")

# Header colour and accent colour per invoice theme
THEME_COLORS: Dict[str, tuple] = {
    'Classic': ("#333333", "#BCBEC0"), 'Modern': ("#1F2937", "#6366F1"),
    'Sunset': ("#C2410C", "#FDBA74"), 'Ocean': ("#0E7490", "#67E8F9"),
    'Monochrome': ("#000000", "#D4D4D4"), 'Minty': ("#047857", "#A7F3D0"),
    'Velvet': ("#6B21A8", "#D8B4FE"), 'Corporate Blue': ("#1E3A8A", "#93C5FD"),
    'Earthy Tones': ("#78350F", "#D6B98C"), 'Creative': ("#BE185D", "#F9A8D4"),
    'Slate Gray': ("#334155", "#CBD5E1"), 'Dark Charcoal': ("#1C1C1C", "#8A8A8A"),
    'Navy Blue': ("#000080", "#9DB4E0"), 'Forest Green': ("#14532D", "#86EFAC"),
    'Burgundy': ("#800020", "#E6A5B5"), 'Teal': ("#0F766E", "#5EEAD4"),
    'Coral': ("#E0573F", "#FFC2B3"), 'Lavender': ("#7C6BB0", "#E2DAF7"),
    'Golden': ("#A16207", "#FDE68A"), 'Steel Blue': ("#4682B4", "#B0C4DE"),
    'Light Blue': ("#3B82F6", "#DBEAFE"), 'Sky Blue': ("#0284C7", "#BAE6FD"),
    'Mint Green': ("#059669", "#D1FAE5"), 'Lime': ("#4D7C0F", "#D9F99D"),
    'Peach': ("#EA8A5E", "#FFE5D4"), 'Rose': ("#E11D48", "#FECDD3"),
    'Lilac': ("#9F7AEA", "#EDE4FB"), 'Sand': ("#A68A64", "#EFE3CF"),
    'Olive': ("#556B2F", "#C9D3A5"), 'Maroon': ("#7F1D1D", "#FCA5A5"),
    'Deep Purple': ("#4C1D95", "#C4B5FD"), 'Turquoise': ("#0D9488", "#99F6E4"),
    'Charcoal': ("#36454F", "#A9B1B7"), 'Crimson': ("#B91C1C", "#FCA5A5"),
    'Sapphire': ("#0F52BA", "#A7C4F2"),
}

LABELS = {
    "English": {
        "invoice": "INVOICE", "number": "Invoice no.", "date": "Date", "due_date": "Due date",
        "supplier": "Supplier", "customer": "Customer", "vat_id": "VAT", "iban": "IBAN",
        "bank": "Bank", "swift": "SWIFT", "description": "Description", "quantity": "Quantity",
        "unit": "Unit", "rate": "Rate", "amount": "Amount", "subtotal": "Subtotal",
        "vat": "VAT", "reverse_charge": "VAT reverse charge (0%)", "total": "Total",
        "total_home": "Total in {home}", "exchange_rate": "Exchange rate",
        "fixed_rate": "contractual rate", "market_rate": "BNR rate", "hours": "hours", "days": "days",
    },
    "Romanian": {
        "invoice": "FACTURĂ", "number": "Factura nr.", "date": "Data", "due_date": "Scadență",
        "supplier": "Furnizor", "customer": "Client", "vat_id": "CIF", "iban": "IBAN",
        "bank": "Banca", "swift": "SWIFT", "description": "Descriere", "quantity": "Cantitate",
        "unit": "U.M.", "rate": "Preț unitar", "amount": "Valoare", "subtotal": "Subtotal",
        "vat": "TVA", "reverse_charge": "Taxare inversă (0%)", "total": "Total",
        "total_home": "Total în {home}", "exchange_rate": "Curs valutar",
        "fixed_rate": "curs contractual", "market_rate": "curs BNR", "hours": "ore", "days": "zile",
    },
}


def invoice_filename(invoice_number: str) -> str:
    return f"invoice-{invoice_number}.pdf"


def theme_colors(theme: Optional[str]) -> tuple:
    header, accent = THEME_COLORS.get(theme or 'Classic', THEME_COLORS['Classic'])
    return colors.HexColor(header), colors.HexColor(accent)


def format_amount(value: Decimal, language: str = "English", places: Decimal = TWO_PLACES) -> str:
    """Display rounding only; stored amounts are never rounded."""
    text = f"{Decimal(value).quantize(places, rounding=ROUND_HALF_UP):,}"
    if language == "Romanian":
        return text.replace(",", "X").replace(".", ",").replace("X", ".")
    return text


def _party_block(title: str, lines, labels) -> str:
    name, address, vat, iban, bank, swift = lines
    rows = [f"<b>{title}</b>", f"<b>{escape(name or '')}</b>", escape(address or '').replace("\n", "<br/>")]
    for label, value in (('vat_id', vat), ('iban', iban), ('bank', bank), ('swift', swift)):
        if value:
            rows.append(f"{labels[label]}: {escape(value)}")
    return "<br/>".join(rows)


def _build_reportlab_pdf(buffer: io.BytesIO, invoice: schemas.InvoiceDraft, logo_path: str = None):
    if os.path.exists(FONT_PATH):
        pdfmetrics.registerFont(TTFont('DejaVuSans', FONT_PATH))
        pdfmetrics.registerFontFamily('DejaVuSans', normal='DejaVuSans', bold='DejaVuSans', italic='DejaVuSans', boldItalic='DejaVuSans')
        main_font = 'DejaVuSans'
    else:
        # Helvetica cannot render every Romanian diacritic
        logger.debug("DejaVuSans.ttf not found, falling back to Helvetica")
        main_font = 'Helvetica'

    language = invoice.language if invoice.language in LABELS else "English"
    labels = LABELS[language]
    header_color, accent_color = theme_colors(invoice.theme)
    home = config.HOME_CURRENCY

    styles = getSampleStyleSheet()
    styles['Normal'].fontName = main_font
    styles['Normal'].fontSize = 9
    styles['Normal'].leading = 12
    styles.add(ParagraphStyle(name='RightAlign', parent=styles['Normal'], alignment=2))
    styles.add(ParagraphStyle(name='Title2', parent=styles['Normal'], fontSize=20, leading=24, textColor=header_color))

    def _draw_header_and_footer(canvas, doc):
        canvas.saveState()
        canvas.setFillColor(header_color)
        canvas.rect(0, A4[1] - 12 * mm, A4[0], 12 * mm, stroke=0, fill=1)
        if logo_path and os.path.exists(logo_path):
            try:
                canvas.drawImage(logo_path, doc.leftMargin, A4[1] - 40 * mm, width=40 * mm, height=20 * mm, preserveAspectRatio=True, anchor='n')
            except (IOError, OSError) as e:
                logger.warning("Could not draw logo %s: %s", logo_path, e)
        canvas.setFont(main_font, 8)
        canvas.setFillColor(colors.grey)
        canvas.drawString(doc.leftMargin, 12 * mm, f"{labels['number']} {invoice.invoice_number}")
        canvas.restoreState()

    doc = SimpleDocTemplate(
        buffer, pagesize=A4, topMargin=45 * mm, leftMargin=20 * mm, rightMargin=20 * mm, bottomMargin=25 * mm,
        title=f"{labels['invoice']} {invoice.invoice_number}", author=invoice.company_name or "",
    )

    story = []
    details = (
        f"<b>{labels['number']}:</b> {escape(invoice.invoice_number)}<br/>"
        f"<b>{labels['date']}:</b> {invoice.date.isoformat()}<br/>"
        f"<b>{labels['due_date']}:</b> {invoice.due_date.isoformat()}"
    )
    story.append(Table(
        [[Paragraph(labels['invoice'], styles['Title2']), Paragraph(details, styles['RightAlign'])]],
        colWidths=[doc.width / 2, doc.width / 2],
    ))
    story.append(Spacer(1, 8 * mm))

    supplier = _party_block(labels['supplier'], (
        invoice.company_name, invoice.company_address, invoice.company_vat,
        invoice.company_iban, invoice.company_bank_name, invoice.company_swift,
    ), labels)
    customer = _party_block(labels['customer'], (
        invoice.client_name, invoice.client_address, invoice.client_vat,
        invoice.client_iban, invoice.client_bank_name, invoice.client_swift,
    ), labels)
    story.append(Table([[Paragraph(supplier, styles['Normal']), Paragraph(customer, styles['Normal'])]],
                       colWidths=[doc.width / 2, doc.width / 2]))
    story.append(Spacer(1, 10 * mm))

    currency = invoice.currency
    data = [[labels['description'], labels['quantity'], labels['unit'], labels['rate'], labels['amount']]]
    for item in invoice.items:
        data.append([
            Paragraph(escape(item.description), styles['Normal']),
            format_amount(item.quantity, language),
            labels.get(item.unit, item.unit),
            f"{format_amount(item.rate, language)} {currency}",
            f"{format_amount(item.amount, language)} {currency}",
        ])
    item_rows = len(data)

    data.append(["", "", "", labels['subtotal'], f"{format_amount(invoice.subtotal, language)} {currency}"])
    # No VAT row at all when VAT does not apply; reverse charge is shown explicitly
    if invoice.vat_rate is not None:
        if invoice.vat_rate == 0:
            data.append(["", "", "", labels['reverse_charge'], f"{format_amount(0, language)} {currency}"])
        else:
            percent = f"{(invoice.vat_rate * 100).normalize():f}"
            data.append(["", "", "", f"{labels['vat']} {percent}%", f"{format_amount(invoice.vat_amount, language)} {currency}"])
    data.append(["", "", "", labels['total'], f"{format_amount(invoice.total, language)} {currency}"])

    if currency != home and invoice.total_ron is not None and invoice.exchange_rate is not None:
        source = labels['fixed_rate'] if invoice.used_max_exchange_rate else labels['market_rate']
        rate_date = invoice.exchange_rate_date.isoformat() if invoice.exchange_rate_date else ""
        data.append(["", "", "", labels['total_home'].format(home=home),
                     f"{format_amount(invoice.total_ron, language)} {home}"])
        data.append([
            Paragraph(f"{labels['exchange_rate']}: 1 {currency} = {format_amount(invoice.exchange_rate, language, FOUR_PLACES)} {home} ({source}, {rate_date})", styles['Normal']),
            "", "", "", "",
        ])

    item_table = Table(data, colWidths=[70 * mm, 22 * mm, 18 * mm, 30 * mm, 30 * mm])
    table_style = [
        ('FONTNAME', (0, 0), (-1, -1), main_font),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('BACKGROUND', (0, 0), (-1, 0), header_color),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('GRID', (0, 0), (-1, item_rows - 1), 0.5, accent_color),
        ('ALIGN', (1, 1), (-1, -1), 'RIGHT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ]
    if currency != home and invoice.total_ron is not None and invoice.exchange_rate is not None:
        table_style.append(('SPAN', (0, -1), (-1, -1)))
        table_style.append(('ALIGN', (0, -1), (-1, -1), 'LEFT'))
    item_table.setStyle(TableStyle(table_style))
    story.append(item_table)

    doc.build(story, onFirstPage=_draw_header_and_footer, onLaterPages=_draw_header_and_footer)


def render_invoice_pdf(invoice: schemas.InvoiceDraft, logo_path: str = None) -> io.BytesIO:
    """Renders the invoice record into an in-memory A4 PDF."""
    buffer = io.BytesIO()
    _build_reportlab_pdf(buffer, invoice, logo_path)
    buffer.seek(0)
    return buffer
