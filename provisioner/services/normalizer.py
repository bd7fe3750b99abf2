"""Turn loosely declared VMs into canonical ``VMSpec`` records.

Nothing here touches the hypervisor. Every rejection is a ``ValidationError`` so
that a bad declarations file fails before any instance is created.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from provisioner.config import Settings
from provisioner.errors import ValidationError
from provisioner.models import NetworkMode, SourceType, VMSpec
from provisioner.schemas import DeclarationDefaults, DeclarationsFile, VMDeclaration


logger = logging.getLogger(__name__)

_SHORTHAND_KEYS = {
    SourceType.ISO: "iso",
    SourceType.TEMPLATE: "template",
    SourceType.BUNDLE: "bundle",
}


def load_declarations(path: str | Path) -> DeclarationsFile:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValidationError(f"cannot read declarations file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"malformed YAML in {path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError(f"declarations file {path} must contain a mapping")
    try:
        return DeclarationsFile.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(_format_pydantic(exc)) from exc


def parse_network(value: str | None, *, name: str) -> NetworkMode:
    if value is None:
        return NetworkMode.SHARED
    normalized = value.strip().lower().replace("_", "-")
    if normalized == "hostonly":
        normalized = NetworkMode.HOST_ONLY.value
    try:
        return NetworkMode(normalized)
    except ValueError:
        raise ValidationError(
            f"unsupported network {value!r}; expected one of "
            f"{sorted(m.value for m in NetworkMode)}",
            name=name,
        ) from None


def parse_source_type(value: str, *, name: str) -> SourceType:
    try:
        return SourceType(value.strip().lower())
    except ValueError:
        raise ValidationError(
            f"unsupported source_type {value!r}; expected one of "
            f"{sorted(s.value for s in SourceType)}",
            name=name,
        ) from None


def resolve_source(
    decl: VMDeclaration, defaults: DeclarationDefaults, *, name: str
) -> tuple[SourceType, str]:
    explicit = {
        source_type: getattr(decl, key)
        for source_type, key in _SHORTHAND_KEYS.items()
        if getattr(decl, key)
    }
    if len(explicit) > 1:
        keys = sorted(_SHORTHAND_KEYS[s] for s in explicit)
        raise ValidationError(f"ambiguous source, got {keys}", name=name)

    if decl.source_type:
        source_type = parse_source_type(decl.source_type, name=name)
        others = [s for s in explicit if s != source_type]
        if others:
            raise ValidationError(
                f"source_type={source_type.value} conflicts with {_SHORTHAND_KEYS[others[0]]}",
                name=name,
            )
        ref = decl.source_ref or explicit.get(source_type) or _default_ref(defaults, source_type)
        if not ref:
            raise ValidationError(
                f"source_type={source_type.value} has no source_ref and no default",
                name=name,
            )
        return source_type, ref

    if decl.source_ref:
        raise ValidationError("source_ref given without source_type", name=name)

    if explicit:
        source_type, ref = next(iter(explicit.items()))
        return source_type, ref

    fallbacks = {
        s: ref
        for s in (SourceType.ISO, SourceType.TEMPLATE)
        if (ref := _default_ref(defaults, s))
    }
    if len(fallbacks) == 1:
        return next(iter(fallbacks.items()))
    if not fallbacks:
        raise ValidationError("no source declared and no default image or template", name=name)
    raise ValidationError(
        "no source declared and both a default image and template are configured",
        name=name,
    )


def _default_ref(defaults: DeclarationDefaults, source_type: SourceType) -> str | None:
    if source_type == SourceType.ISO:
        return defaults.iso
    if source_type == SourceType.TEMPLATE:
        return defaults.template
    return None


def merge_defaults(
    settings: Settings, overrides: DeclarationDefaults | None = None
) -> DeclarationDefaults:
    merged = DeclarationDefaults(
        cpus=settings.default_cpus,
        memory_mb=settings.default_memory_mb,
        disk_gb=settings.default_disk_gb,
        network=settings.default_network,
        iso=settings.default_iso,
        template=settings.default_template,
    )
    if overrides is None:
        return merged
    return merged.model_copy(update=overrides.model_dump(exclude_none=True))


def normalize(
    declarations: Mapping[str, Any],
    defaults: DeclarationDefaults,
) -> list[VMSpec]:
    specs: list[VMSpec] = []
    seen: set[str] = set()
    for key, raw in declarations.items():
        decl = _coerce_declaration(key, raw)
        name = (decl.name or key).strip()
        if not name:
            raise ValidationError(f"empty name for declaration {key!r}")
        if name in seen:
            raise ValidationError("duplicate name", name=name)
        seen.add(name)

        source_type, source_ref = resolve_source(decl, defaults, name=name)
        linked = decl.linked_clone
        if linked and source_type != SourceType.TEMPLATE:
            logger.debug("ignoring linked_clone for non-template source name=%s", name)
            linked = False
        if decl.disk_gb is not None and source_type != SourceType.ISO:
            logger.debug("ignoring disk_gb for non-iso source name=%s", name)

        start_after = frozenset(d.strip() for d in decl.start_after if d.strip())
        if name in start_after:
            raise ValidationError("instance cannot start after itself", name=name)

        specs.append(
            VMSpec(
                name=name,
                source_type=source_type,
                source_ref=source_ref,
                cpus=decl.cpus or defaults.cpus or 2,
                memory_mb=decl.memory_mb or defaults.memory_mb or 4096,
                disk_gb=decl.disk_gb or defaults.disk_gb or 20,
                network=parse_network(decl.network or defaults.network, name=name),
                linked_clone=linked,
                start_after=start_after,
                cloud_init_payload=decl.cloud_init,
            )
        )

    for spec in specs:
        missing = sorted(spec.start_after - seen)
        if missing:
            raise ValidationError(f"start_after references unknown {missing}", name=spec.name)
    return order_by_dependencies(specs)


def normalize_file(path: str | Path, settings: Settings) -> list[VMSpec]:
    document = load_declarations(path)
    return normalize(document.vms, merge_defaults(settings, document.defaults))


def order_by_dependencies(specs: list[VMSpec]) -> list[VMSpec]:
    """Topological order with declaration order as the tie breaker."""
    position = {spec.name: idx for idx, spec in enumerate(specs)}
    by_name = {spec.name: spec for spec in specs}
    remaining = {spec.name: set(spec.start_after) for spec in specs}
    ordered: list[VMSpec] = []
    while remaining:
        ready = sorted((n for n, deps in remaining.items() if not deps), key=position.get)
        if not ready:
            cycle = sorted(remaining, key=position.get)
            raise ValidationError(f"dependency cycle among {cycle}")
        for name in ready:
            ordered.append(by_name[name])
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return ordered


def _coerce_declaration(key: str, raw: Any) -> VMDeclaration:
    if isinstance(raw, VMDeclaration):
        return raw
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValidationError(f"declaration must be a mapping, got {type(raw).__name__}", name=key)
    try:
        return VMDeclaration.model_validate(dict(raw))
    except PydanticValidationError as exc:
        raise ValidationError(_format_pydantic(exc), name=key) from exc


def _format_pydantic(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)
