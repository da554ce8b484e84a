from datetime import datetime, timezone
from decimal import Decimal

from comanda.models import Order
from comanda.receipts.layout import (
    Align,
    LayoutConfig,
    LayoutField,
    LayoutSection,
    OrderField,
    default_layout,
)
from comanda.receipts.renderer import (
    render,
    render_lines,
    sanitize_text,
    wrap_text,
)


def _order(**kw) -> Order:
    data = dict(
        id=42,
        customer_name="João da Silva",
        address="Rua das Flores, 123 - Centro",
        item_description="1x Pizza Calabresa",
        notes="",
        amount=Decimal("57.9"),
        payment_type="PIX",
        created_at=datetime(2024, 5, 10, 21, 30, tzinfo=timezone.utc),
    )
    data.update(kw)
    return Order(**data)


def test_default_layout_renders_all_sections():
    text = render(_order(), default_layout())
    lines = text.split("\n")

    assert lines[0] == "PEDIDO DE ENTREGA"
    assert lines[1] == "=" * 32
    assert "Pedido #42" in lines
    # 21:30 UTC -> 18:30 a São Paulo
    assert "10/05/2024 18:30" in lines
    assert "Joao da Silva" in lines
    assert "Pagamento: PIX" in lines
    assert "TOTAL: R$ 57,90" in lines
    assert "   Obrigado pela preferencia!   " in lines


def test_render_is_idempotent():
    order = _order(notes="Sem cebola…")
    layout = default_layout()
    assert render(order, layout) == render(order, layout)


def test_pizza_description_wraps_without_losing_characters():
    desc = "2x Pizza Margherita, 1x Coca-Cola 2L, 1x Batata Frita"
    text = render(_order(item_description=desc), default_layout(32))

    start = text.index("2x Pizza")
    chunk = []
    for line in text[start:].split("\n"):
        if not line:
            break
        chunk.append(line)

    assert len(chunk) > 1
    assert all(len(line) <= 32 for line in chunk)
    assert " ".join(chunk) == desc


def test_every_line_fits_paper_width():
    order = _order(
        notes="Entregar no portão dos fundos, tocar a campainha duas vezes por favor",
        address="Avenida" + "X" * 70,
    )
    for width in (24, 32, 48):
        for line in render(order, default_layout(width)).split("\n"):
            assert len(line) <= width


def test_long_word_is_hard_split_at_width():
    word = "A" * 70
    assert wrap_text(word, 32) == ["A" * 32, "A" * 32, "A" * 6]


def test_wrap_keeps_blank_paragraphs():
    assert wrap_text("uno\n\ndue tre", 10) == ["uno", "", "due tre"]


def test_empty_value_is_skipped_with_its_prefix():
    text = render(_order(notes=""), default_layout())
    assert "Obs:" not in text


def test_missing_amount_skips_total_line():
    text = render(_order(amount=None), default_layout())
    assert "TOTAL" not in text


def test_overrides_win_over_order_values():
    text = render(_order(), default_layout(), {"customerName": "Mesa 7"})
    assert "Mesa 7" in text
    assert "Joao" not in text


def test_legacy_override_key_is_accepted():
    text = render(_order(), default_layout(), {"footer_message": "Volte sempre"})
    assert "Volte sempre" in text


def test_print_date_only_from_overrides():
    layout = LayoutConfig(header=LayoutSection(fields=[
        LayoutField(field=OrderField.ID, prefix="#"),
        LayoutField(field=OrderField.PRINT_DATE, position=1, prefix="Impresso: "),
    ]))
    assert "Impresso" not in render(_order(), layout)

    printed_at = datetime(2024, 5, 10, 22, 0, tzinfo=timezone.utc)
    assert "Impresso: 10/05/2024 19:00" in render(_order(), layout, {"printDate": printed_at})


def test_fields_with_same_position_keep_insertion_order():
    layout = LayoutConfig(header=LayoutSection(fields=[
        LayoutField(field=OrderField.PAYMENT_TYPE, position=1),
        LayoutField(field=OrderField.CUSTOMER_NAME, position=1),
        LayoutField(field=OrderField.ID, position=0, prefix="#"),
    ]))
    assert render(_order(), layout).split("\n") == ["#42", "PIX", "Joao da Silva"]


def test_sections_sorted_by_position():
    layout = LayoutConfig(
        header=LayoutSection(position=2, title="DOIS"),
        footer=LayoutSection(position=1, title="UM"),
    )
    assert render(_order(), layout).split("\n") == ["UM", "", "DOIS"]


def test_single_char_separator_fills_width():
    layout = LayoutConfig(paper_width=20, header=LayoutSection(title="X", separator="-"))
    assert render(_order(), layout).split("\n") == ["X", "-" * 20]


def test_right_alignment_with_field_width():
    layout = LayoutConfig(header=LayoutSection(fields=[
        LayoutField(field=OrderField.PAYMENT_TYPE, align=Align.RIGHT, width=10),
    ]))
    assert render(_order(), layout) == "       PIX"


def test_layout_without_sections_falls_back_to_emergency_receipt():
    text = render(_order(), LayoutConfig())
    assert text.startswith("PEDIDO DE ENTREGA")
    assert "Pedido #42" in text
    assert "Obrigado pela preferencia!" in text
    assert sanitize_text(text) == text
    assert all(len(line) <= 32 for line in text.split("\n"))


def test_missing_layout_falls_back():
    assert render(_order(), None).startswith("PEDIDO DE ENTREGA")


def test_disabled_sections_yield_fallback():
    layout = default_layout()
    for section in layout.sections():
        section.enabled = False
    assert render(_order(), layout).startswith("PEDIDO DE ENTREGA")


def test_render_lines_carry_style():
    lines = render_lines(_order(), default_layout())
    assert lines[0].text == "PEDIDO DE ENTREGA"
    assert lines[0].bold is True
    footer = [ln for ln in lines if "Obrigado" in ln.text]
    assert footer and footer[0].align == "center"


def test_sanitize_text():
    raw = "“Café” – pão… ação\x07\x1b\x1D\x56\x41\x03 fim \\x1b"
    assert sanitize_text(raw) == '"Cafe" - pao... acao fim '


def test_sanitize_is_idempotent():
    raw = "Açaí com granola — “especial”\ttab"
    once = sanitize_text(raw)
    assert sanitize_text(once) == once
    assert once.isascii()
