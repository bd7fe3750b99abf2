import pytest

from provisioner.config import Settings
from provisioner.errors import ValidationError
from provisioner.models import NetworkMode, SourceType
from provisioner.schemas import DeclarationDefaults
from provisioner.services.normalizer import (
    load_declarations,
    merge_defaults,
    normalize,
    normalize_file,
)


def _defaults(**kwargs) -> DeclarationDefaults:
    base = {"cpus": 2, "memory_mb": 4096, "disk_gb": 20, "network": "shared"}
    base.update(kwargs)
    return DeclarationDefaults(**base)


def test_iso_shorthand_resolves_to_iso_spec():
    specs = normalize({"web": {"iso": "ubuntu.iso", "memory_mb": 2048}}, _defaults())
    assert len(specs) == 1
    spec = specs[0]
    assert spec.name == "web"
    assert spec.source_type == SourceType.ISO
    assert spec.source_ref == "ubuntu.iso"
    assert spec.cpus == 2
    assert spec.memory_mb == 2048
    assert spec.disk_gb == 20
    assert spec.network == NetworkMode.SHARED


def test_explicit_source_type_and_ref():
    specs = normalize(
        {"db": {"source_type": "Template", "source_ref": "base-tmpl", "linked_clone": True}},
        _defaults(),
    )
    assert specs[0].source_type == SourceType.TEMPLATE
    assert specs[0].source_ref == "base-tmpl"
    assert specs[0].linked_clone is True


def test_two_shorthand_sources_are_ambiguous():
    with pytest.raises(ValidationError) as exc:
        normalize({"web": {"iso": "a.iso", "template": "base"}}, _defaults())
    assert "ambiguous" in str(exc.value)
    assert exc.value.name == "web"


def test_source_type_conflicting_with_shorthand_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {"source_type": "iso", "template": "base"}}, _defaults())


def test_source_ref_without_type_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {"source_ref": "base"}}, _defaults())


def test_unknown_source_type_rejected():
    with pytest.raises(ValidationError) as exc:
        normalize({"web": {"source_type": "floppy", "source_ref": "x"}}, _defaults())
    assert "floppy" in str(exc.value)


def test_default_source_used_when_exactly_one_configured():
    specs = normalize({"web": None}, _defaults(template="golden"))
    assert specs[0].source_type == SourceType.TEMPLATE
    assert specs[0].source_ref == "golden"


def test_default_source_ambiguous_when_both_configured():
    with pytest.raises(ValidationError):
        normalize({"web": {}}, _defaults(template="golden", iso="ubuntu.iso"))


def test_no_source_and_no_default_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {}}, _defaults())


def test_source_type_falls_back_to_matching_default():
    specs = normalize({"web": {"source_type": "iso"}}, _defaults(iso="ubuntu.iso"))
    assert specs[0].source_ref == "ubuntu.iso"


def test_linked_clone_ignored_for_iso_source():
    specs = normalize({"web": {"iso": "ubuntu.iso", "linked_clone": True}}, _defaults())
    assert specs[0].linked_clone is False


def test_network_aliases_normalized():
    specs = normalize(
        {
            "a": {"template": "t", "network": "host_only"},
            "b": {"template": "t", "network": "HostOnly"},
            "c": {"template": "t", "network": "bridged"},
        },
        _defaults(),
    )
    assert [s.network for s in specs] == [
        NetworkMode.HOST_ONLY,
        NetworkMode.HOST_ONLY,
        NetworkMode.BRIDGED,
    ]


def test_unknown_network_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {"template": "t", "network": "nat66"}}, _defaults())


def test_non_positive_hardware_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {"template": "t", "cpus": 0}}, _defaults())


def test_unknown_keys_rejected():
    with pytest.raises(ValidationError):
        normalize({"web": {"template": "t", "colour": "blue"}}, _defaults())


def test_duplicate_resolved_names_rejected():
    with pytest.raises(ValidationError) as exc:
        normalize(
            {"a": {"template": "t", "name": "web"}, "b": {"template": "t", "name": "web"}},
            _defaults(),
        )
    assert "duplicate" in str(exc.value)


def test_unknown_dependency_rejected():
    with pytest.raises(ValidationError):
        normalize({"app": {"template": "t", "start_after": ["db"]}}, _defaults())


def test_self_dependency_rejected():
    with pytest.raises(ValidationError):
        normalize({"app": {"template": "t", "start_after": ["app"]}}, _defaults())


def test_dependency_cycle_rejected():
    with pytest.raises(ValidationError) as exc:
        normalize(
            {
                "a": {"template": "t", "start_after": ["b"]},
                "b": {"template": "t", "start_after": ["a"]},
            },
            _defaults(),
        )
    assert "cycle" in str(exc.value)


def test_output_is_topological_with_declaration_ties():
    specs = normalize(
        {
            "app": {"template": "t", "start_after": ["db"]},
            "web": {"iso": "u.iso"},
            "db": {"template": "t"},
            "cache": {"template": "t"},
        },
        _defaults(),
    )
    assert [s.name for s in specs] == ["web", "db", "cache", "app"]


def test_merge_defaults_prefers_file_over_settings():
    settings = Settings(default_cpus=4, default_template="from-env")
    merged = merge_defaults(settings, DeclarationDefaults(cpus=8))
    assert merged.cpus == 8
    assert merged.template == "from-env"
    assert merged.memory_mb == settings.default_memory_mb


def test_normalize_file_reads_yaml(tmp_path):
    path = tmp_path / "vms.yaml"
    path.write_text(
        "defaults:\n"
        "  cpus: 4\n"
        "  template: base-tmpl\n"
        "vms:\n"
        "  db: {linked_clone: true}\n"
        "  app:\n"
        "    start_after: [db]\n"
        "    cloud_init: \"#cloud-config\\n\"\n",
        encoding="utf-8",
    )
    specs = normalize_file(path, Settings())
    assert [s.name for s in specs] == ["db", "app"]
    assert specs[0].cpus == 4
    assert specs[0].linked_clone is True
    assert specs[1].start_after == frozenset({"db"})
    assert specs[1].cloud_init_payload == "#cloud-config\n"


def test_malformed_yaml_is_validation_error(tmp_path):
    path = tmp_path / "vms.yaml"
    path.write_text("vms: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_declarations(path)


def test_missing_file_is_validation_error(tmp_path):
    with pytest.raises(ValidationError):
        load_declarations(tmp_path / "missing.yaml")


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "vms.yaml"
    path.write_text("- web\n- db\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_declarations(path)
