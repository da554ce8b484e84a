# comanda/receipts/layout.py
"""
Modello del layout di stampa.

Un layout è composto da sei sezioni fisse (header, customerInfo, orderInfo,
itemsInfo, totals, footer); ogni sezione contiene campi legati a un attributo
dell'ordine. I nomi dei campi sono un insieme chiuso: un nome sconosciuto
fa fallire la validazione al caricamento, non produce righe vuote in stampa.
"""
from __future__ import annotations
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class OrderField(str, Enum):
    ID = "id"
    CREATED_AT = "createdAt"
    CUSTOMER_NAME = "customerName"
    ADDRESS = "address"
    ITEM_DESCRIPTION = "itemDescription"
    NOTES = "notes"
    AMOUNT = "amount"
    PAYMENT_TYPE = "paymentType"
    # valori non presenti sull'ordine: arrivano solo dagli override
    STORE_NAME = "storeName"
    FOOTER_MESSAGE = "footerMessage"
    PRINT_DATE = "printDate"


# attributo dell'Order per ogni campo legato all'ordine
ORDER_ATTRIBUTES = {
    OrderField.ID: "id",
    OrderField.CREATED_AT: "created_at",
    OrderField.CUSTOMER_NAME: "customer_name",
    OrderField.ADDRESS: "address",
    OrderField.ITEM_DESCRIPTION: "item_description",
    OrderField.NOTES: "notes",
    OrderField.AMOUNT: "amount",
    OrderField.PAYMENT_TYPE: "payment_type",
}

# nomi legacy (colonne portoghesi, snake_case) accettati in ingresso
FIELD_ALIASES = {
    "order_id": OrderField.ID,
    "created_at": OrderField.CREATED_AT,
    "data": OrderField.CREATED_AT,
    "customer_name": OrderField.CUSTOMER_NAME,
    "nome_cliente": OrderField.CUSTOMER_NAME,
    "endereco": OrderField.ADDRESS,
    "item_description": OrderField.ITEM_DESCRIPTION,
    "pedido": OrderField.ITEM_DESCRIPTION,
    "observacoes": OrderField.NOTES,
    "valor": OrderField.AMOUNT,
    "payment_type": OrderField.PAYMENT_TYPE,
    "tipo_pagamento": OrderField.PAYMENT_TYPE,
    "store_name": OrderField.STORE_NAME,
    "footer_message": OrderField.FOOTER_MESSAGE,
    "print_date": OrderField.PRINT_DATE,
}


class FieldFormat(str, Enum):
    PLAIN = "plain"
    CURRENCY = "currency"
    DATE = "date"


FORMAT_ALIASES = {"datetime": FieldFormat.DATE, "text": FieldFormat.PLAIN}

# formato usato quando il campo non ne dichiara uno
NATURAL_FORMATS = {
    OrderField.AMOUNT: FieldFormat.CURRENCY,
    OrderField.CREATED_AT: FieldFormat.DATE,
    OrderField.PRINT_DATE: FieldFormat.DATE,
}


class Align(str, Enum):
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


SECTION_NAMES = ("header", "customerInfo", "orderInfo", "itemsInfo", "totals", "footer")


class _LayoutModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LayoutField(_LayoutModel):
    field: OrderField
    enabled: bool = True
    position: int = 0
    format: Optional[FieldFormat] = None
    align: Align = Align.LEFT
    width: Optional[int] = Field(default=None, ge=1)
    prefix: str = ""
    suffix: str = ""
    new_line_after: bool = False
    bold: bool = False

    @field_validator("field", mode="before")
    @classmethod
    def _field_alias(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return FIELD_ALIASES.get(v, v)
        return v

    @field_validator("format", mode="before")
    @classmethod
    def _format_alias(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return FORMAT_ALIASES.get(v, v) if v else None
        return v

    @property
    def effective_format(self) -> FieldFormat:
        return self.format or NATURAL_FORMATS.get(self.field, FieldFormat.PLAIN)


class LayoutSection(_LayoutModel):
    enabled: bool = True
    position: int = 0
    title: Optional[str] = None
    separator: Optional[str] = None
    fields: List[LayoutField] = Field(default_factory=list)


class LayoutConfig(_LayoutModel):
    id: Optional[int] = None
    name: str = "Layout"
    description: str = ""
    is_default: bool = False
    paper_width: int = Field(default=32, ge=8, le=96)
    header: Optional[LayoutSection] = None
    customer_info: Optional[LayoutSection] = None
    order_info: Optional[LayoutSection] = None
    items_info: Optional[LayoutSection] = None
    totals: Optional[LayoutSection] = None
    footer: Optional[LayoutSection] = None

    def sections(self) -> List[LayoutSection]:
        """Sezioni abilitate in ordine di stampa (sort stabile su position)."""
        present = [
            self.header, self.customer_info, self.order_info,
            self.items_info, self.totals, self.footer,
        ]
        enabled = [s for s in present if s is not None and s.enabled]
        return sorted(enabled, key=lambda s: s.position)

    def to_body(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude={"id"})


def _fld(field: OrderField, position: int, **kw) -> LayoutField:
    return LayoutField(field=field, position=position, new_line_after=True, **kw)


def default_layout(paper_width: int = 32) -> LayoutConfig:
    """Layout iniziale funzionante, seminato quando non ne esiste nessuno."""
    w = paper_width
    return LayoutConfig(
        name="Layout Padrão Funcional",
        description="Layout inicial funcional.",
        is_default=True,
        paper_width=w,
        header=LayoutSection(
            position=1, title="PEDIDO DE ENTREGA", separator="=" * w,
            fields=[
                _fld(OrderField.ID, 1, prefix="Pedido #"),
                _fld(OrderField.CREATED_AT, 2, format=FieldFormat.DATE),
            ],
        ),
        customer_info=LayoutSection(
            position=2, title="CLIENTE", separator="-" * w,
            fields=[
                _fld(OrderField.CUSTOMER_NAME, 1),
                _fld(OrderField.ADDRESS, 2),
            ],
        ),
        order_info=LayoutSection(
            position=3, title="PEDIDO", separator="-" * w,
            fields=[
                _fld(OrderField.ITEM_DESCRIPTION, 1),
                _fld(OrderField.NOTES, 2, prefix="Obs: "),
            ],
        ),
        items_info=LayoutSection(enabled=False, position=4),
        totals=LayoutSection(
            position=5, title="VALORES", separator="-" * w,
            fields=[
                _fld(OrderField.PAYMENT_TYPE, 1, prefix="Pagamento: "),
                _fld(OrderField.AMOUNT, 2, format=FieldFormat.CURRENCY, prefix="TOTAL: "),
            ],
        ),
        footer=LayoutSection(
            position=6, separator="=" * w,
            fields=[_fld(OrderField.FOOTER_MESSAGE, 1, align=Align.CENTER)],
        ),
    )
