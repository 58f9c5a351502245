"""
Typed views over the JSON payloads of personalization configs and values.

Configs store kind-specific constraints as JSON columns; services parse
them into these dataclasses before validating or pricing anything, so the
rules for each kind live in one place and unknown keys never leak into
business logic.

Usage:
    from orderflow.services.personalization_types import (
        PersonalizationValue, constraints_for, PriceImpactRule,
    )

    rule = PriceImpactRule.from_dict(config.price_impact)
    value = PersonalizationValue.from_dict(payload)
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from orderflow.core.exceptions import ValidationError
from orderflow.models.personalization import PERSONALIZATION_TYPES, PRICE_IMPACT_TYPES

ALLOWED_CHARACTER_SETS = ("any", "alphanumeric", "letters", "numeric")


def _decimal(value, field_name: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(
            f"{field_name} must be a number", details={field_name: str(value)}
        ) from exc
    if result < 0:
        raise ValidationError(f"{field_name} must not be negative", details={field_name: str(value)})
    return result


def _pick(data: dict | None, cls) -> dict:
    """Keep only the keys ``cls`` declares."""
    names = cls.__dataclass_fields__.keys()
    return {k: v for k, v in (data or {}).items() if k in names}


# Coercers raise ValueError; _typed turns that into a ValidationError.

def _as_count(value) -> int:
    if isinstance(value, bool):
        raise ValueError("a whole number")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValueError("a whole number")
    return value


def _as_number(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError("a number")
    try:
        result = float(value)
    except ValueError:
        raise ValueError("a number") from None
    if not math.isfinite(result) or result < 0:
        raise ValueError("a number")
    return result


def _as_flag(value) -> bool:
    if not isinstance(value, bool):
        raise ValueError("true or false")
    return value


def _as_text(value) -> str:
    if not isinstance(value, str):
        raise ValueError("a string")
    return value


def _as_text_list(value) -> tuple:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValueError("a list of strings")
    return tuple(value)


def _typed(data, cls, coercers: dict, label: str) -> dict:
    """Pick ``cls`` fields from ``data`` and coerce them.

    Null fields fall back to the dataclass default.  Every bad field is
    reported at once under ``details["fields"]``.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"{label} must be an object", details={"fields": {label: "must be an object"}})
    picked, errors = {}, {}
    for key, value in _pick(data, cls).items():
        if value is None:
            continue
        coerce = coercers.get(key)
        if coerce is None:
            picked[key] = value
            continue
        try:
            picked[key] = coerce(value)
        except ValueError as exc:
            errors[f"{label}.{key}"] = f"must be {exc}"
    if errors:
        raise ValidationError(f"Invalid {label}", details={"fields": errors})
    return picked


# ── Constraint payloads ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextConstraints:
    max_length: int = 50
    min_length: int = 0
    allowed_characters: str = "any"
    multiline: bool = False
    max_lines: int = 1
    validation_regex: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> TextConstraints:
        obj = cls(**_typed(data, cls, {
            "max_length": _as_count,
            "min_length": _as_count,
            "allowed_characters": _as_text,
            "multiline": _as_flag,
            "max_lines": _as_count,
            "validation_regex": _as_text,
        }, "text_config"))
        if obj.allowed_characters not in ALLOWED_CHARACTER_SETS:
            raise ValidationError(
                f"Unknown allowed_characters '{obj.allowed_characters}'",
                details={"allowed_characters": list(ALLOWED_CHARACTER_SETS)},
            )
        if obj.min_length > obj.max_length:
            raise ValidationError("min_length cannot exceed max_length")
        return obj


@dataclass(frozen=True)
class ImageConstraints:
    max_file_size_mb: float = 10
    allowed_formats: tuple = ("jpg", "jpeg", "png")
    min_width: int = 300
    min_height: int = 300
    max_uploads: int = 1

    @classmethod
    def from_dict(cls, data: dict | None) -> ImageConstraints:
        picked = _typed(data, cls, {
            "max_file_size_mb": _as_number,
            "allowed_formats": _as_text_list,
            "min_width": _as_count,
            "min_height": _as_count,
            "max_uploads": _as_count,
        }, "image_upload_config")
        if "allowed_formats" in picked:
            picked["allowed_formats"] = tuple(f.lower() for f in picked["allowed_formats"])
        return cls(**picked)


@dataclass(frozen=True)
class FontConstraints:
    allowed_font_ids: tuple = ()
    allow_all_system_fonts: bool = False
    min_size: int = 12
    max_size: int = 72

    @classmethod
    def from_dict(cls, data: dict | None) -> FontConstraints:
        obj = cls(**_typed(data, cls, {
            "allowed_font_ids": _as_text_list,
            "allow_all_system_fonts": _as_flag,
            "min_size": _as_count,
            "max_size": _as_count,
        }, "font_config"))
        if obj.min_size > obj.max_size:
            raise ValidationError("min_size cannot exceed max_size")
        return obj


@dataclass(frozen=True)
class ColorConstraints:
    palette_id: str | None = None
    allowed_colors: tuple = ()
    allow_custom_colors: bool = False

    @classmethod
    def from_dict(cls, data: dict | None) -> ColorConstraints:
        picked = _typed(data, cls, {
            "palette_id": _as_text,
            "allowed_colors": _as_text_list,
            "allow_custom_colors": _as_flag,
        }, "color_config")
        if "allowed_colors" in picked:
            picked["allowed_colors"] = tuple(c.lower() for c in picked["allowed_colors"])
        return cls(**picked)


@dataclass(frozen=True)
class ChoiceConstraints:
    """Allowed option ids for image / placement / template selection."""

    image_ids: tuple = ()
    placement_ids: tuple = ()
    template_ids: tuple = ()

    @classmethod
    def from_dict(cls, data: dict | None) -> ChoiceConstraints:
        return cls(**_typed(data, cls, dict.fromkeys(
            ("image_ids", "placement_ids", "template_ids"), _as_text_list,
        ), "choice_config"))


@dataclass(frozen=True)
class PriceImpactRule:
    type: str = "none"
    fixed_amount: Decimal = Decimal("0")
    percentage: Decimal = Decimal("0")
    per_character: Decimal = Decimal("0")
    per_image: Decimal = Decimal("0")

    @classmethod
    def from_dict(cls, data: dict | None) -> PriceImpactRule:
        data = data or {}
        rule_type = data.get("type") or "none"
        if rule_type not in PRICE_IMPACT_TYPES:
            raise ValidationError(
                f"Unknown price impact type '{rule_type}'",
                details={"valid_types": list(PRICE_IMPACT_TYPES)},
            )
        return cls(
            type=rule_type,
            fixed_amount=_decimal(data.get("fixed_amount"), "fixed_amount"),
            percentage=_decimal(data.get("percentage"), "percentage"),
            per_character=_decimal(data.get("per_character"), "per_character"),
            per_image=_decimal(data.get("per_image"), "per_image"),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "fixed_amount": str(self.fixed_amount),
            "percentage": str(self.percentage),
            "per_character": str(self.per_character),
            "per_image": str(self.per_image),
        }


@dataclass(frozen=True)
class ConfigConstraints:
    """All constraint payloads that apply to one config."""

    kind: str
    text: TextConstraints | None = None
    image: ImageConstraints | None = None
    font: FontConstraints | None = None
    color: ColorConstraints | None = None
    choice: ChoiceConstraints | None = None

    def components(self) -> list[str]:
        """Value parts a submission for this config must carry."""
        if self.kind != "combined":
            return [_KIND_COMPONENT[self.kind]]
        parts = []
        if self.text is not None:
            parts.append("text")
        if self.image is not None:
            parts.append("images")
        if self.font is not None:
            parts.append("font")
        if self.color is not None:
            parts.append("color")
        if self.choice is not None:
            if self.choice.image_ids:
                parts.append("selected_image_id")
            if self.choice.placement_ids:
                parts.append("placement_id")
            if self.choice.template_ids:
                parts.append("template_id")
        return parts


_KIND_COMPONENT = {
    "text": "text",
    "image_upload": "images",
    "image_selection": "selected_image_id",
    "font_selection": "font",
    "color_selection": "color",
    "placement_selection": "placement_id",
    "template_selection": "template_id",
}


def constraints_for(config) -> ConfigConstraints:
    """Parse a PersonalizationConfig's JSON columns into typed constraints.

    For a single-kind config the matching payload is always present (with
    defaults); for ``combined`` only the payloads the provider filled in
    take part.
    """
    kind = config.personalization_type
    if kind not in PERSONALIZATION_TYPES:
        raise ValidationError(f"Unknown personalization type '{kind}'")

    combined = kind == "combined"

    def _use(payload, wanted):
        return payload is not None if combined else kind in wanted

    return ConfigConstraints(
        kind=kind,
        text=TextConstraints.from_dict(config.text_config)
        if _use(config.text_config, {"text"}) else None,
        image=ImageConstraints.from_dict(config.image_upload_config)
        if _use(config.image_upload_config, {"image_upload"}) else None,
        font=FontConstraints.from_dict(config.font_config)
        if _use(config.font_config, {"font_selection"}) else None,
        color=ColorConstraints.from_dict(config.color_config)
        if _use(config.color_config, {"color_selection"}) else None,
        choice=ChoiceConstraints.from_dict(config.choice_config)
        if _use(config.choice_config, {"image_selection", "placement_selection", "template_selection"})
        else None,
    )


# ── Values ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UploadedImage:
    url: str
    format: str | None = None
    file_size_mb: float | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> UploadedImage:
        if isinstance(data, str):
            return cls(url=data)
        if not isinstance(data, dict) or not data.get("url"):
            raise ValidationError("Each image needs a url", details={"image": data})
        return cls(**_typed(data, cls, {
            "url": _as_text,
            "format": _as_text,
            "file_size_mb": _as_number,
            "width": _as_count,
            "height": _as_count,
        }, "image"))


@dataclass(frozen=True)
class FontChoice:
    font_id: str
    size: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> FontChoice | None:
        if isinstance(data, str):
            data = {"font_id": data}
        picked = _typed(data, cls, {"font_id": _as_text, "size": _as_count}, "font")
        return cls(**picked) if picked.get("font_id") else None


@dataclass(frozen=True)
class ColorChoice:
    hex: str
    palette_color_id: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ColorChoice | None:
        if isinstance(data, str):
            data = {"hex": data}
        picked = _typed(data, cls, {"hex": _as_text, "palette_color_id": _as_text}, "color")
        return cls(**picked) if picked.get("hex") else None


def _option_id(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    raise ValidationError(f"{key} must be a string", details={"fields": {key: "must be a string"}})


@dataclass(frozen=True)
class PersonalizationValue:
    """A customer's value for one config.  Unused parts stay None."""

    text: str | None = None
    images: tuple[UploadedImage, ...] = field(default_factory=tuple)
    selected_image_id: str | None = None
    font: FontChoice | None = None
    color: ColorChoice | None = None
    placement_id: str | None = None
    template_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> PersonalizationValue:
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError("value must be an object")
        images = data.get("images") or ()
        if isinstance(images, (str, dict)):
            images = [images]
        if not isinstance(images, (list, tuple)):
            raise ValidationError("images must be a list", details={"fields": {"images": "must be a list"}})
        text = data.get("text")
        return cls(
            text=str(text) if text is not None else None,
            images=tuple(UploadedImage.from_dict(i) for i in images),
            selected_image_id=_option_id(data, "selected_image_id"),
            font=FontChoice.from_dict(data.get("font")),
            color=ColorChoice.from_dict(data.get("color")),
            placement_id=_option_id(data, "placement_id"),
            template_id=_option_id(data, "template_id"),
        )

    @classmethod
    def from_submission(cls, submission) -> PersonalizationValue:
        image_data = submission.image_data or {}
        return cls.from_dict({
            "text": submission.text_value,
            "images": image_data.get("images"),
            "selected_image_id": image_data.get("selected_image_id"),
            "font": submission.font_data,
            "color": submission.color_data,
            "placement_id": (submission.placement_data or {}).get("placement_id"),
            "template_id": (submission.template_data or {}).get("template_id"),
        })

    def has(self, component: str) -> bool:
        part = getattr(self, component)
        if component == "text":
            return part is not None and part.strip() != ""
        if component == "images":
            return len(part) > 0
        return part is not None and part != ""

    @property
    def image_count(self) -> int:
        return len(self.images)

    def to_columns(self) -> dict:
        """Map onto PersonalizationSubmission's typed columns."""
        image_data = {}
        if self.images:
            image_data["images"] = [asdict(i) for i in self.images]
        if self.selected_image_id:
            image_data["selected_image_id"] = self.selected_image_id
        return {
            "text_value": self.text,
            "image_data": image_data or None,
            "font_data": asdict(self.font) if self.font else None,
            "color_data": asdict(self.color) if self.color else None,
            "placement_data": {"placement_id": self.placement_id} if self.placement_id else None,
            "template_data": {"template_id": self.template_id} if self.template_id else None,
        }

    def to_dict(self) -> dict:
        d = {
            "text": self.text,
            "images": [asdict(i) for i in self.images],
            "selected_image_id": self.selected_image_id,
            "font": asdict(self.font) if self.font else None,
            "color": asdict(self.color) if self.color else None,
            "placement_id": self.placement_id,
            "template_id": self.template_id,
        }
        return {k: v for k, v in d.items() if v not in (None, [])}
