"""Structured store settings consulted by the cart and the sale engines.

Settings are persisted as ``(Section, Key, Value)`` rows on the ``Settings``
sheet. :func:`policy_from_rows` maps the known sections and keys onto typed
dataclasses and keeps anything else, untouched, in ``Policy.extensions``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping

from . import log
from .data_manager import SettingRow, parse_bool


@dataclass(frozen=True)
class SystemSection:
    nome_empresa: str = "Minha Empresa"
    idioma: str = "pt-BR"
    moeda: str = "BRL"


@dataclass(frozen=True)
class PricingSection:
    margem_lucro_padrao: Decimal = Decimal("20")
    imposto_padrao: Decimal = Decimal("10")
    arredondar_precos: bool = True
    permitir_venda_abaixo_custo: bool = False


@dataclass(frozen=True)
class StockSection:
    notificar_estoque_baixo: bool = True
    estoque_minimo_padrao: int = 5
    permitir_estoque_negativo: bool = False


@dataclass(frozen=True)
class SalesSection:
    permitir_venda_sem_cliente: bool = True
    desconto_maximo_percentual: Decimal = Decimal("15")
    associar_vendedor: bool = True


@dataclass(frozen=True)
class UsersSection:
    multiusuario: bool = True
    autenticacao_2_etapas: bool = False


@dataclass(frozen=True)
class Policy:
    """Read-only settings snapshot.

    ``extensions`` holds sections and keys this release does not model, as
    raw strings, so they survive a load/save round trip.
    """

    sistema: SystemSection = field(default_factory=SystemSection)
    precificacao: PricingSection = field(default_factory=PricingSection)
    estoque: StockSection = field(default_factory=StockSection)
    vendas: SalesSection = field(default_factory=SalesSection)
    usuarios: UsersSection = field(default_factory=UsersSection)
    extensions: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def get(self, dotted_key: str) -> Any:
        """Return a typed value such as ``policy.get("vendas.associar_vendedor")``.

        Raises:
            KeyError: If the section or key is not a modelled setting.
        """

        section_name, _, key = dotted_key.partition(".")
        if section_name not in SECTION_TYPES or not key:
            raise KeyError(f"Unknown setting: {dotted_key}")
        section = getattr(self, section_name)
        if key not in {f.name for f in fields(section)}:
            raise KeyError(f"Unknown setting: {dotted_key}")
        return getattr(section, key)

    @property
    def allow_negative_stock(self) -> bool:
        return self.estoque.permitir_estoque_negativo

    @property
    def associate_seller(self) -> bool:
        return self.vendas.associar_vendedor

    @property
    def max_discount_percent(self) -> Decimal:
        return self.vendas.desconto_maximo_percentual

    @property
    def low_stock_threshold(self) -> int:
        return self.estoque.estoque_minimo_padrao


SECTION_TYPES: Dict[str, type] = {
    "sistema": SystemSection,
    "precificacao": PricingSection,
    "estoque": StockSection,
    "vendas": SalesSection,
    "usuarios": UsersSection,
}

DEFAULT_POLICY = Policy()


def _coerce(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return parse_bool(raw)
    if isinstance(template, int):
        return int(Decimal(raw))
    if isinstance(template, Decimal):
        return Decimal(raw)
    return raw


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def policy_from_rows(rows: Iterable[SettingRow]) -> Policy:
    """Build a :class:`Policy` from settings rows on top of the defaults.

    Values that cannot be converted to the expected type are logged and the
    default is kept.
    """

    overrides: Dict[str, Dict[str, Any]] = {name: {} for name in SECTION_TYPES}
    extensions: Dict[str, Dict[str, str]] = {}

    for row in rows:
        section_type = SECTION_TYPES.get(row.section)
        known = {f.name: f for f in fields(section_type)} if section_type else {}
        if row.key not in known:
            extensions.setdefault(row.section, {})[row.key] = row.value
            continue
        template = getattr(getattr(DEFAULT_POLICY, row.section), row.key)
        try:
            overrides[row.section][row.key] = _coerce(row.value, template)
        except (InvalidOperation, ValueError):
            log.warning(
                "Ignoring invalid value %r for setting '%s.%s'",
                row.value,
                row.section,
                row.key,
            )

    sections = {
        name: replace(getattr(DEFAULT_POLICY, name), **values)
        for name, values in overrides.items()
    }
    return Policy(extensions=extensions, **sections)


def policy_to_rows(policy: Policy) -> List[SettingRow]:
    """Flatten a policy into settings rows, modelled sections first."""

    rows: List[SettingRow] = []
    for name in SECTION_TYPES:
        section = getattr(policy, name)
        for f in fields(section):
            rows.append(SettingRow(section=name, key=f.name, value=_render(getattr(section, f.name))))
    for section_name, values in policy.extensions.items():
        for key, value in values.items():
            rows.append(SettingRow(section=section_name, key=key, value=value))
    return rows


def with_setting(policy: Policy, section: str, key: str, value: str) -> Policy:
    """Return a copy of ``policy`` with one setting replaced.

    Unknown sections or keys are stored in ``extensions``.

    Raises:
        ValueError: If ``value`` does not convert to the setting's type.
    """

    section_type = SECTION_TYPES.get(section)
    if section_type is None or key not in {f.name for f in fields(section_type)}:
        extensions = {name: dict(values) for name, values in policy.extensions.items()}
        extensions.setdefault(section, {})[key] = value
        return replace(policy, extensions=extensions)

    template = getattr(getattr(DEFAULT_POLICY, section), key)
    try:
        typed = _coerce(value, template)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid value for {section}.{key}: {value!r}") from exc
    updated = replace(getattr(policy, section), **{key: typed})
    return replace(policy, **{section: updated})


__all__ = [
    "Policy",
    "SystemSection",
    "PricingSection",
    "StockSection",
    "SalesSection",
    "UsersSection",
    "SECTION_TYPES",
    "DEFAULT_POLICY",
    "policy_from_rows",
    "policy_to_rows",
    "with_setting",
]
