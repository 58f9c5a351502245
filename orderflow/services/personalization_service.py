"""
Personalization Configuration & Submission Service.

Providers declare per-listing personalization inputs (configs); customers
fill them in while shopping (submissions).  Validation runs at submit time
so the customer gets immediate, structured feedback, and an invalid value
is never stored.

Pricing lives in ``compute_price_impact`` — a pure function shared by the
live price preview and the snapshot totals so the two can never diverge.

Usage:
    from orderflow.services import personalization_service

    config = personalization_service.create_config(listing_id, provider_id,
                                                   personalization_type="text", label="Name")
    sub = personalization_service.submit_personalization(config.id, customer_id,
                                                         {"text": "HAPPY BIRTHDAY"},
                                                         cart_item_id=cart_item_id)
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select

from orderflow.core.exceptions import (
    InvalidPersonalizationInput,
    NotFoundError,
    PersonalizationLocked,
    ValidationError,
)
from orderflow.integrations.marketplace_gateway import CatalogGateway
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.marketplace import CartItem
from orderflow.models.personalization import (
    LIVE_PREVIEW_MODES,
    LOCK_STAGES,
    PERSONALIZATION_TYPES,
    PersonalizationConfig,
    PersonalizationSubmission,
)
from orderflow.models.production import ProductionOrder
from orderflow.services.permission import guard_owner
from orderflow.services.personalization_types import (
    ConfigConstraints,
    PersonalizationValue,
    PriceImpactRule,
    constraints_for,
)
from orderflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")

_CONFIG_FIELDS = (
    "label", "help_text", "is_enabled", "is_required",
    "text_config", "image_upload_config", "font_config", "color_config", "choice_config",
    "live_preview_mode", "price_impact", "lock_after_stage", "display_order",
    "customization_option_id",
)


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Pricing (pure)
# ═════════════════════════════════════════════════════════════════════════════


def price_rule_of(config) -> PriceImpactRule:
    """Accept a config row, a serialized config dict, or a rule."""
    if isinstance(config, PriceImpactRule):
        return config
    if isinstance(config, dict):
        return PriceImpactRule.from_dict(config.get("price_impact"))
    return PriceImpactRule.from_dict(config.price_impact)


def compute_price_impact(config, value, image_count: int | None = None) -> Decimal:
    """Price impact of one submitted value.

    fixed         → fixed_amount
    per_character → len(text) × per_character
    per_image     → image_count × per_image
    percentage    → 0 here; applied to the order total (compute_percentage_impact)
    none          → 0

    Pure and idempotent: no I/O, same inputs → same Decimal.
    """
    rule = price_rule_of(config)
    if isinstance(value, str):
        value = PersonalizationValue(text=value)
    elif not isinstance(value, PersonalizationValue):
        value = PersonalizationValue.from_dict(value)
    if image_count is None:
        image_count = value.image_count

    if rule.type == "fixed":
        return _quantize(rule.fixed_amount)
    if rule.type == "per_character":
        return _quantize(Decimal(len(value.text or "")) * rule.per_character)
    if rule.type == "per_image":
        return _quantize(Decimal(image_count) * rule.per_image)
    return Decimal("0.00")


def compute_percentage_impact(config, order_subtotal) -> Decimal:
    """Deferred percentage rule applied to the order subtotal."""
    rule = price_rule_of(config)
    if rule.type != "percentage":
        return Decimal("0.00")
    return _quantize(Decimal(order_subtotal) * rule.percentage / Decimal(100))


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _violation(field: str, constraint: str, message: str, **extra) -> dict:
    v = {"field": field, "constraint": constraint, "message": message}
    v.update(extra)
    return v


def _text_violations(c, text: str) -> list[dict]:
    out = []
    if len(text) < c.min_length:
        out.append(_violation("text", "min_length", f"Text must be at least {c.min_length} characters",
                              limit=c.min_length, actual=len(text)))
    if len(text) > c.max_length:
        out.append(_violation("text", "max_length", f"Text must be at most {c.max_length} characters",
                              limit=c.max_length, actual=len(text)))

    lines = text.splitlines() or [""]
    if not c.multiline and len(lines) > 1:
        out.append(_violation("text", "multiline", "Line breaks are not allowed"))
    elif c.multiline and len(lines) > c.max_lines:
        out.append(_violation("text", "max_lines", f"At most {c.max_lines} lines are allowed",
                              limit=c.max_lines, actual=len(lines)))

    checks = {
        "alphanumeric": str.isalnum,
        "letters": str.isalpha,
        "numeric": str.isdigit,
    }
    check = checks.get(c.allowed_characters)
    if check is not None:
        bad = sorted({ch for ch in text if not (check(ch) or ch.isspace())})
        if bad:
            out.append(_violation("text", "allowed_characters",
                                  f"Characters not allowed: {''.join(bad)}",
                                  allowed=c.allowed_characters, disallowed=bad))

    if c.validation_regex and re.fullmatch(c.validation_regex, text) is None:
        out.append(_violation("text", "validation_regex", "Text does not match the required pattern"))
    return out


def _image_format(image) -> str | None:
    if image.format:
        return image.format.lower().lstrip(".")
    ext = os.path.splitext(image.url.split("?", 1)[0])[1]
    return ext.lower().lstrip(".") or None


def _image_violations(c, images) -> list[dict]:
    out = []
    if len(images) > c.max_uploads:
        out.append(_violation("images", "max_uploads", f"At most {c.max_uploads} image(s) may be uploaded",
                              limit=c.max_uploads, actual=len(images)))
    for idx, image in enumerate(images):
        field = f"images[{idx}]"
        fmt = _image_format(image)
        if c.allowed_formats and fmt not in c.allowed_formats:
            out.append(_violation(field, "format", f"Format '{fmt}' is not allowed",
                                  allowed=list(c.allowed_formats)))
        if image.file_size_mb is not None and image.file_size_mb > c.max_file_size_mb:
            out.append(_violation(field, "max_file_size", f"File exceeds {c.max_file_size_mb} MB",
                                  limit=c.max_file_size_mb, actual=image.file_size_mb))
        if (image.width is not None and image.width < c.min_width) or (
            image.height is not None and image.height < c.min_height
        ):
            out.append(_violation(field, "min_resolution",
                                  f"Image must be at least {c.min_width}x{c.min_height}",
                                  limit=[c.min_width, c.min_height], actual=[image.width, image.height]))
    return out


def _font_violations(c, font) -> list[dict]:
    out = []
    if c.allowed_font_ids and not c.allow_all_system_fonts and font.font_id not in c.allowed_font_ids:
        out.append(_violation("font", "allowed_fonts", f"Font '{font.font_id}' is not offered"))
    if font.size is not None and not (c.min_size <= font.size <= c.max_size):
        out.append(_violation("font", "font_size", f"Font size must be between {c.min_size} and {c.max_size}",
                              limit=[c.min_size, c.max_size], actual=font.size))
    return out


def _color_violations(c, color) -> list[dict]:
    if not _HEX_COLOR.match(color.hex or ""):
        return [_violation("color", "color_format", "Color must be a hex value like #1A2B3C")]
    if c.allowed_colors and not c.allow_custom_colors and color.hex.lower() not in c.allowed_colors:
        return [_violation("color", "allowed_colors", f"Color {color.hex} is not in the palette")]
    return []


def _choice_violations(field: str, allowed: tuple, chosen) -> list[dict]:
    if allowed and chosen not in allowed:
        return [_violation(field, "allowed_options", f"'{chosen}' is not an available option")]
    return []


def validate_submission(config, value: PersonalizationValue,
                        constraints: ConfigConstraints | None = None) -> list[dict]:
    """Return every violated constraint; an empty list means the value is valid."""
    c = constraints or constraints_for(config)
    violations = []

    for component in c.components():
        if not value.has(component):
            violations.append(_violation(component, "required", f"{component} is required"))
    if violations:
        return violations

    if c.text is not None and value.text is not None:
        violations += _text_violations(c.text, value.text)
    if c.image is not None and value.images:
        violations += _image_violations(c.image, value.images)
    if c.font is not None and value.font is not None:
        violations += _font_violations(c.font, value.font)
    if c.color is not None and value.color is not None:
        violations += _color_violations(c.color, value.color)
    if c.choice is not None:
        if value.selected_image_id is not None:
            violations += _choice_violations("selected_image_id", c.choice.image_ids, value.selected_image_id)
        if value.placement_id is not None:
            violations += _choice_violations("placement_id", c.choice.placement_ids, value.placement_id)
        if value.template_id is not None:
            violations += _choice_violations("template_id", c.choice.template_ids, value.template_id)
    return violations


def parse_and_validate(config, raw_value) -> PersonalizationValue:
    """Parse ``raw_value`` and raise InvalidPersonalizationInput on any violation."""
    try:
        value = PersonalizationValue.from_dict(raw_value)
    except ValidationError as exc:
        fields = (exc.details or {}).get("fields")
        if isinstance(fields, dict):
            violations = [_violation(name, "format", f"{name} {problem}") for name, problem in fields.items()]
        else:
            violations = [_violation("value", "format", str(exc))]
        raise InvalidPersonalizationInput(violations, config_id=config.id) from exc
    violations = validate_submission(config, value)
    if violations:
        raise InvalidPersonalizationInput(violations, config_id=config.id)
    return value


# ═════════════════════════════════════════════════════════════════════════════
# Configs
# ═════════════════════════════════════════════════════════════════════════════


def _check_config(config: PersonalizationConfig) -> None:
    errors = {}
    if config.personalization_type not in PERSONALIZATION_TYPES:
        errors["personalization_type"] = f"Must be one of: {', '.join(PERSONALIZATION_TYPES)}"
    if config.live_preview_mode not in LIVE_PREVIEW_MODES:
        errors["live_preview_mode"] = f"Must be one of: {', '.join(LIVE_PREVIEW_MODES)}"
    if config.lock_after_stage not in LOCK_STAGES:
        errors["lock_after_stage"] = f"Must be one of: {', '.join(LOCK_STAGES)}"
    if not (config.label or "").strip():
        errors["label"] = "Label is required"
    if errors:
        raise ValidationError("Invalid personalization config", details=errors)

    constraints = constraints_for(config)
    if config.personalization_type == "combined" and not constraints.components():
        raise ValidationError("A combined config needs at least one component")
    if constraints.text is not None and constraints.text.validation_regex:
        try:
            re.compile(constraints.text.validation_regex)
        except re.error as exc:
            raise ValidationError("validation_regex does not compile",
                                  details={"validation_regex": str(exc)}) from exc
    config.price_impact = PriceImpactRule.from_dict(config.price_impact).to_dict()


def create_config(listing_id: str, actor_id: str, *, personalization_type: str, label: str,
                  catalog: CatalogGateway | None = None, **fields) -> PersonalizationConfig:
    """Declare a personalization input on a listing (listing's provider only)."""
    terms = (catalog or CatalogGateway()).resolve_terms(listing_id)
    guard_owner(terms.provider_id, actor_id, "ServiceListing", listing_id)

    unknown = set(fields) - set(_CONFIG_FIELDS)
    if unknown:
        raise ValidationError("Unknown config fields", details={"fields": sorted(unknown)})

    config = PersonalizationConfig(
        listing_id=listing_id,
        personalization_type=personalization_type,
        label=label,
        created_by=actor_id,
        live_preview_mode=fields.pop("live_preview_mode", None) or "enabled",
        lock_after_stage=fields.pop("lock_after_stage", None) or "order_received",
        price_impact=fields.pop("price_impact", None) or {"type": "none"},
        **fields,
    )
    _check_config(config)
    db.session.add(config)
    db.session.flush()

    write_audit(entity_type="personalization_config", entity_id=config.id, action="create",
                actor=actor_id, diff={"listing_id": listing_id, "type": personalization_type})
    commit_or_conflict("PersonalizationConfig", config.id)
    logger.info("Personalization config created",
                extra={"actor_id": actor_id, "event_type": "personalization_config_created"})
    return config


def get_config(config_id: str) -> PersonalizationConfig:
    config = db.session.get(PersonalizationConfig, config_id)
    if config is None:
        raise NotFoundError(resource="PersonalizationConfig", resource_id=config_id)
    return config


def update_config(config_id: str, actor_id: str, catalog: CatalogGateway | None = None,
                  **changes) -> PersonalizationConfig:
    """Edit a config.  Existing snapshots keep their frozen copy."""
    config = get_config(config_id)
    terms = (catalog or CatalogGateway()).resolve_terms(config.listing_id)
    guard_owner(terms.provider_id, actor_id, "PersonalizationConfig", config_id)

    unknown = set(changes) - set(_CONFIG_FIELDS)
    if unknown:
        raise ValidationError("Unknown config fields", details={"fields": sorted(unknown)})

    diff = {}
    for key, new in changes.items():
        old = getattr(config, key)
        if old != new:
            setattr(config, key, new)
            diff[key] = {"old": old, "new": new}
    _check_config(config)

    if diff:
        write_audit(entity_type="personalization_config", entity_id=config.id, action="update",
                    actor=actor_id, diff=diff)
    commit_or_conflict("PersonalizationConfig", config.id)
    return config


def list_configs(listing_id: str, active_only: bool = True) -> list[PersonalizationConfig]:
    stmt = select(PersonalizationConfig).where(PersonalizationConfig.listing_id == listing_id)
    if active_only:
        stmt = stmt.where(PersonalizationConfig.is_enabled.is_(True))
    stmt = stmt.order_by(PersonalizationConfig.display_order, PersonalizationConfig.created_at)
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Submissions
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_target(config, customer_id, cart_item_id, production_order_id):
    if not cart_item_id and not production_order_id:
        raise ValidationError("cart_item_id or production_order_id is required")
    if cart_item_id:
        item = db.session.get(CartItem, cart_item_id)
        if item is None or item.customer_id != customer_id or item.listing_id != config.listing_id:
            raise NotFoundError(resource="CartItem", resource_id=cart_item_id)
    if production_order_id:
        order = db.session.get(ProductionOrder, production_order_id)
        if order is None or order.customer_id != customer_id or order.listing_id != config.listing_id:
            raise NotFoundError(resource="ProductionOrder", resource_id=production_order_id)


def _apply_value(submission, config, value: PersonalizationValue) -> None:
    for column, column_value in value.to_columns().items():
        setattr(submission, column, column_value)
    submission.calculated_price_impact = compute_price_impact(config, value)
    submission.validation_status = "valid"
    submission.validated_at = _now()


def submit_personalization(config_id: str, customer_id: str, value, *,
                           cart_item_id: str | None = None,
                           production_order_id: str | None = None) -> PersonalizationSubmission:
    """Validate and store the customer's value for one config.

    Re-submitting for the same config and cart line replaces the earlier
    value, unless that value is already locked.
    """
    config = get_config(config_id)
    if not config.is_enabled:
        raise NotFoundError(resource="PersonalizationConfig", resource_id=config_id)
    _resolve_target(config, customer_id, cart_item_id, production_order_id)

    parsed = parse_and_validate(config, value)

    existing = db.session.execute(
        select(PersonalizationSubmission).where(
            PersonalizationSubmission.config_id == config_id,
            PersonalizationSubmission.customer_id == customer_id,
            PersonalizationSubmission.cart_item_id == cart_item_id
            if cart_item_id else PersonalizationSubmission.production_order_id == production_order_id,
        )
    ).scalars().first()

    if existing is not None and existing.is_locked:
        raise PersonalizationLocked(existing.id, existing.locked_reason)

    submission = existing or PersonalizationSubmission(
        config_id=config_id,
        customer_id=customer_id,
        cart_item_id=cart_item_id,
        production_order_id=production_order_id,
    )
    _apply_value(submission, config, parsed)
    db.session.add(submission)
    db.session.flush()

    write_audit(entity_type="personalization_submission", entity_id=submission.id,
                action="personalization.submit", actor=customer_id,
                diff={"config_id": config_id, "price_impact": submission.calculated_price_impact,
                      "replaced": existing is not None})
    commit_or_conflict("PersonalizationSubmission", submission.id)
    return submission


def get_submission(submission_id: str, customer_id: str) -> PersonalizationSubmission:
    submission = db.session.get(PersonalizationSubmission, submission_id)
    if submission is None:
        raise NotFoundError(resource="PersonalizationSubmission", resource_id=submission_id)
    guard_owner(submission.customer_id, customer_id, "PersonalizationSubmission", submission_id)
    return submission


def update_submission(submission_id: str, customer_id: str, value) -> PersonalizationSubmission:
    """Replace a submission's value.  Locked submissions raise PersonalizationLocked."""
    submission = get_submission(submission_id, customer_id)
    if submission.is_locked:
        raise PersonalizationLocked(submission.id, submission.locked_reason)

    config = submission.config
    parsed = parse_and_validate(config, value)
    _apply_value(submission, config, parsed)

    write_audit(entity_type="personalization_submission", entity_id=submission.id,
                action="update", actor=customer_id,
                diff={"price_impact": submission.calculated_price_impact})
    commit_or_conflict("PersonalizationSubmission", submission.id)
    return submission


def delete_submission(submission_id: str, customer_id: str) -> None:
    submission = get_submission(submission_id, customer_id)
    if submission.is_locked:
        raise PersonalizationLocked(submission.id, submission.locked_reason)
    write_audit(entity_type="personalization_submission", entity_id=submission.id,
                action="delete", actor=customer_id)
    db.session.delete(submission)
    commit_or_conflict("PersonalizationSubmission", submission_id)


def list_submissions(customer_id: str, *, cart_item_id: str | None = None,
                     production_order_id: str | None = None) -> list[PersonalizationSubmission]:
    stmt = select(PersonalizationSubmission).where(
        PersonalizationSubmission.customer_id == customer_id,
    )
    if cart_item_id:
        stmt = stmt.where(PersonalizationSubmission.cart_item_id == cart_item_id)
    if production_order_id:
        stmt = stmt.where(PersonalizationSubmission.production_order_id == production_order_id)
    return list(db.session.execute(stmt.order_by(PersonalizationSubmission.created_at)).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Live preview
# ═════════════════════════════════════════════════════════════════════════════


def preview_price(listing_id: str, values: dict, subtotal=None) -> dict:
    """Price a set of not-yet-submitted values ({config_id: value}).

    Read-only.  Invalid values are reported, not raised, so the UI can show
    the running total while the customer is still typing.
    """
    configs = {c.id: c for c in list_configs(listing_id)}
    items = []
    total = Decimal("0.00")
    percentage_total = Decimal("0.00")

    for config_id, raw in (values or {}).items():
        config = configs.get(config_id)
        if config is None:
            raise NotFoundError(resource="PersonalizationConfig", resource_id=config_id)
        try:
            parsed = PersonalizationValue.from_dict(raw)
            violations = validate_submission(config, parsed)
        except ValidationError as exc:
            parsed, violations = None, [_violation("value", "format", str(exc))]

        impact = compute_price_impact(config, parsed) if parsed is not None and not violations else Decimal("0.00")
        pct = Decimal("0.00")
        if subtotal is not None and not violations:
            pct = compute_percentage_impact(config, subtotal)
        total += impact
        percentage_total += pct
        items.append({
            "config_id": config_id,
            "price_impact": str(impact),
            "percentage_impact": str(pct),
            "violations": violations,
            "live_preview_mode": config.live_preview_mode,
        })

    return {
        "listing_id": listing_id,
        "items": items,
        "total_price_impact": str(_quantize(total + percentage_total)),
    }
