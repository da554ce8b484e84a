# comanda/receipts/renderer.py
"""
Motore di rendering dello scontrino: (ordine, layout) -> testo a larghezza fissa.

Il rendering è puro e deterministico (nessun I/O, nessun `now()`: la data di
stampa arriva dagli override) e non solleva mai eccezioni verso il chiamante.
Se il layout è rotto o non produce nulla si stampa lo scontrino di emergenza.
"""
from __future__ import annotations
import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jinja2 import Environment, BaseLoader

from ..models import as_utc
from .errors import LayoutRenderError
from .layout import (
    Align,
    FieldFormat,
    FIELD_ALIASES,
    LayoutConfig,
    LayoutField,
    LayoutSection,
    ORDER_ATTRIBUTES,
    OrderField,
)

log = logging.getLogger(__name__)

DEFAULT_WIDTH = 32


@dataclass(frozen=True)
class ReceiptLine:
    text: str
    align: str = "left"
    bold: bool = False
    double_height: bool = False


@dataclass
class RenderSettings:
    currency_symbol: str = "R$"
    timezone: str = "America/Sao_Paulo"
    store_name: str = ""
    footer_message: str = "Obrigado pela preferência!"

    @classmethod
    def from_config(cls, cfg) -> "RenderSettings":
        return cls(
            currency_symbol=cfg.currency_symbol,
            timezone=cfg.timezone,
            store_name=cfg.store_name,
            footer_message=cfg.footer_message,
        )


# ========= Template =========
def render_jinja(body: str, ctx: Dict[str, Any]) -> str:
    env = Environment(loader=BaseLoader(), autoescape=False, trim_blocks=True, lstrip_blocks=True)
    return env.from_string(body).render(**ctx)


FALLBACK_TEMPLATE = (
    "PEDIDO DE ENTREGA\n"
    "{{ '=' * width }}\n"
    "Pedido #{{ order_id }}\n"
    "Data: {{ created }}\n"
    "{{ '-' * width }}\n"
    "CLIENTE: {{ customer }}\n"
    "Endereco: {{ address }}\n"
    "{{ '-' * width }}\n"
    "PEDIDO: {{ items }}\n"
    "{% if notes %}Obs: {{ notes }}\n{% endif %}"
    "{{ '-' * width }}\n"
    "Pagamento: {{ payment }}\n"
    "TOTAL: {{ total }}\n"
    "{{ '=' * width }}\n"
    "Obrigado pela preferencia!\n"
)


# ========= Sanitize =========
# comandi di taglio (GS V A 3) finiti nel testo, anche in forma "escapata"
_CONTROL_SEQUENCES = re.compile(
    r"\x1D\x56\x41\x03"
    r"|\\x1DV\\x41\\x03"
    r"|\\x1D V \\x41 \\x03"
    r"|0x1D0x56\w*"
)
_HEX_ESCAPES = re.compile(r"\\x[0-9A-Fa-f]{2}")
_CONTROL_BYTES = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_PUNCTUATION = {
    "\u201c": '"', "\u201d": '"', "\u201e": '"', "\u00ab": '"', "\u00bb": '"',
    "\u2018": "'", "\u2019": "'", "\u201a": "'", "\u00b4": "'",
    "\u2013": "-", "\u2014": "-", "\u2212": "-",
    "\u2026": "...",
    "\u00a0": " ", "\t": " ",
}
_PUNCTUATION_TABLE = str.maketrans(_PUNCTUATION)


def sanitize_text(text: str) -> str:
    """Testo stampabile in ASCII: niente accenti, controlli o sequenze ESC/POS."""
    if not text:
        return ""
    s = str(text).replace("\r\n", "\n").replace("\r", "")
    s = _CONTROL_SEQUENCES.sub("", s)
    s = s.translate(_PUNCTUATION_TABLE)
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = _CONTROL_BYTES.sub("", s)
    s = _HEX_ESCAPES.sub("", s)
    # quello che resta fuori dall'ASCII la termica non lo sa stampare
    return "".join(ch if ord(ch) < 128 else "?" for ch in s)


# ========= Wrap / align =========
def wrap_text(text: str, width: int) -> List[str]:
    """Greedy per parole; una parola più lunga della riga viene spezzata."""
    width = max(1, int(width))
    out: List[str] = []
    for para in text.split("\n"):
        words = para.split()
        if not words:
            out.append("")
            continue
        cur = ""
        for word in words:
            while len(word) > width:
                if cur:
                    out.append(cur)
                    cur = ""
                out.append(word[:width])
                word = word[width:]
            if not word:
                continue
            if not cur:
                cur = word
            elif len(cur) + 1 + len(word) <= width:
                cur = f"{cur} {word}"
            else:
                out.append(cur)
                cur = word
        if cur:
            out.append(cur)
    return out


def align_text(text: str, align: Align, width: int, pad: bool = False) -> str:
    if len(text) >= width:
        return text
    if align == Align.RIGHT:
        return text.rjust(width)
    if align == Align.CENTER:
        gap = width - len(text)
        left = gap // 2
        return " " * left + text + " " * (gap - left)
    return text.ljust(width) if pad else text


# ========= Format =========
@lru_cache(maxsize=8)
def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("timezone %s non disponibile, uso UTC", name)
        return timezone.utc


def format_currency(value: Any, symbol: str = "R$") -> str:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return str(value)
    return f"{symbol} {amount:.2f}".replace(".", ",")


def format_date(value: Any, tz_name: str = "America/Sao_Paulo") -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return value
    if not isinstance(value, datetime):
        return str(value)
    return as_utc(value).astimezone(_zone(tz_name)).strftime("%d/%m/%Y %H:%M")


def format_value(value: Any, fmt: FieldFormat, settings: RenderSettings) -> str:
    if value is None:
        return ""
    if fmt == FieldFormat.CURRENCY:
        return format_currency(value, settings.currency_symbol)
    if fmt == FieldFormat.DATE:
        return format_date(value, settings.timezone)
    return str(value)


def normalize_overrides(overrides: Optional[Mapping[str, Any]]) -> Dict[OrderField, Any]:
    out: Dict[OrderField, Any] = {}
    for k, v in (overrides or {}).items():
        key = FIELD_ALIASES.get(k, k)
        try:
            out[OrderField(key)] = v
        except ValueError:
            log.debug("override sconosciuto ignorato: %s", k)
    return out


def _resolve(field: OrderField, order, overrides: Dict[OrderField, Any], settings: RenderSettings) -> Any:
    if field in overrides:
        return overrides[field]
    attr = ORDER_ATTRIBUTES.get(field)
    if attr is not None:
        return getattr(order, attr, None)
    if field == OrderField.STORE_NAME:
        return settings.store_name
    if field == OrderField.FOOTER_MESSAGE:
        return settings.footer_message
    return None


# ========= Render =========
def _field_lines(fld: LayoutField, order, overrides, settings, paper_width: int) -> List[ReceiptLine]:
    value = format_value(_resolve(fld.field, order, overrides, settings), fld.effective_format, settings)
    value = sanitize_text(value).strip()
    if not value:
        return []
    text = sanitize_text(fld.prefix) + value + sanitize_text(fld.suffix)
    width = min(fld.width or paper_width, paper_width)
    out = [
        ReceiptLine(align_text(chunk, fld.align, width, pad=fld.width is not None), fld.align.value, fld.bold)
        for chunk in wrap_text(text, width)
    ]
    if fld.new_line_after:
        out.append(ReceiptLine(""))
    return out


def _section_lines(section: LayoutSection, order, overrides, settings, paper_width: int) -> List[ReceiptLine]:
    out: List[ReceiptLine] = []
    if section.title:
        for chunk in wrap_text(sanitize_text(section.title), paper_width):
            out.append(ReceiptLine(chunk, bold=True))
    if section.separator:
        sep = sanitize_text(section.separator)
        sep = sep * paper_width if len(sep) == 1 else sep[:paper_width]
        out.append(ReceiptLine(sep))
    fields = sorted((f for f in section.fields if f.enabled), key=lambda f: f.position)
    for fld in fields:
        out.extend(_field_lines(fld, order, overrides, settings, paper_width))
    return out


def _render_layout(order, layout: LayoutConfig, overrides, settings) -> List[ReceiptLine]:
    if layout is None:
        raise LayoutRenderError("nessun layout")
    width = layout.paper_width
    sections = layout.sections()
    lines: List[ReceiptLine] = []
    for idx, section in enumerate(sections):
        lines.extend(_section_lines(section, order, overrides, settings, width))
        if idx < len(sections) - 1:
            lines.append(ReceiptLine(""))
    if not any(ln.text.strip() for ln in lines):
        raise LayoutRenderError("il layout non ha prodotto righe")
    return lines


def _fallback_lines(order, settings: RenderSettings, width: int) -> List[ReceiptLine]:
    def attr(name):
        return getattr(order, name, None)

    try:
        amount = attr("amount")
        text = render_jinja(FALLBACK_TEMPLATE, {
            "width": width,
            "order_id": attr("id") or "",
            "created": format_date(attr("created_at"), settings.timezone) if attr("created_at") else "",
            "customer": attr("customer_name") or "",
            "address": attr("address") or "",
            "items": attr("item_description") or "",
            "notes": attr("notes") or "",
            "payment": attr("payment_type") or "",
            "total": format_currency(amount, settings.currency_symbol) if amount is not None else "",
        })
    except Exception:
        log.exception("anche lo scontrino di emergenza è fallito")
        text = "PEDIDO DE ENTREGA\nPedido #%s\n" % (attr("id") or "")
    lines: List[ReceiptLine] = []
    for raw in sanitize_text(text).split("\n"):
        lines.extend(ReceiptLine(chunk) for chunk in wrap_text(raw, width))
    while lines and not lines[-1].text:
        lines.pop()
    return lines


def render_lines(order, layout: Optional[LayoutConfig], overrides: Optional[Mapping[str, Any]] = None,
                 settings: Optional[RenderSettings] = None) -> List[ReceiptLine]:
    settings = settings or RenderSettings()
    try:
        width = layout.paper_width if layout is not None else DEFAULT_WIDTH
    except AttributeError:
        width = DEFAULT_WIDTH
    try:
        lines = _render_layout(order, layout, normalize_overrides(overrides), settings)
    except Exception as e:
        log.warning("render layout fallito (ordine %s): %r → scontrino di emergenza",
                    getattr(order, "id", None), e)
        lines = _fallback_lines(order, settings, width)
    # passata finale: il testo è già pulito, qui si blinda l'output
    return [
        ReceiptLine(sanitize_text(ln.text), ln.align, ln.bold, ln.double_height)
        for ln in lines
    ]


def render(order, layout: Optional[LayoutConfig], overrides: Optional[Mapping[str, Any]] = None,
           settings: Optional[RenderSettings] = None) -> str:
    return "\n".join(ln.text for ln in render_lines(order, layout, overrides, settings))
