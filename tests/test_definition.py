"""Tests for pipeline definitions and the definition loader."""

import json
import random
from pathlib import Path

import pytest
import yaml

from conveyor.core.errors import CycleError, LoadError
from conveyor.pipeline.definition import PipelineDefinition, RetryPolicy
from conveyor.pipeline.loader import load_definition, load_definition_text, resolve_definition_ref
from conveyor.pipeline.types import AdapterKind
from tests.fakes import RELEASE_TOML, release_definition

EXAMPLES = Path(__file__).parent.parent / "examples"


def doc(*stages, **extra):
    return {"name": "p", "schema_version": 1, "stages": list(stages), **extra}


class TestLoader:
    def test_load_toml(self):
        definition = release_definition()
        assert definition.name == "release"
        assert [s.name for s in definition.stages] == ["provision", "build", "push", "deploy", "configure"]
        assert definition.stage("build").retry.max_attempts == 3
        assert definition.stage("configure").params["targets"] == ["web-1", "web-2"]

    def test_yaml_and_json_match_toml(self):
        document = release_definition().to_document()
        from_yaml = load_definition_text(yaml.safe_dump(document), "yaml")
        from_json = load_definition_text(json.dumps(document), "json")
        assert from_yaml.version == from_json.version == release_definition().version

    def test_load_file_by_extension(self, tmp_path):
        path = tmp_path / "release.toml"
        path.write_text(RELEASE_TOML)
        assert load_definition(path).name == "release"

    def test_unknown_extension(self, tmp_path):
        path = tmp_path / "release.ini"
        path.write_text("")
        with pytest.raises(LoadError, match="Unknown definition file type"):
            load_definition(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError, match="not found"):
            load_definition(tmp_path / "nope.toml")

    def test_parse_error(self):
        with pytest.raises(LoadError, match="Cannot parse toml"):
            load_definition_text("name = ")

    def test_top_level_must_be_mapping(self):
        with pytest.raises(LoadError, match="mapping"):
            load_definition_text("- a\n- b\n", "yaml")

    def test_resolve_ref_by_name(self, tmp_path):
        (tmp_path / "release.yaml").write_text("name: x")
        assert resolve_definition_ref("release", tmp_path) == tmp_path / "release.yaml"

    def test_resolve_ref_by_path(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text("{}")
        assert resolve_definition_ref(str(path), "/elsewhere") == path

    def test_resolve_ref_missing(self, tmp_path):
        with pytest.raises(LoadError, match="'release' not found"):
            resolve_definition_ref("release", tmp_path)

    @pytest.mark.parametrize("name", ["release.toml", "hotfix.yaml"])
    def test_bundled_examples_load(self, name):
        definition = load_definition(EXAMPLES / name)
        assert definition.graph.topological_sort()[0] in ("provision", "deploy")


class TestValidation:
    def test_unknown_schema_version(self):
        with pytest.raises(LoadError, match="schema_version"):
            load_definition_text(json.dumps(doc({"name": "a", "kind": "build"}, schema_version=2)), "json")

    def test_unknown_kind(self):
        with pytest.raises(LoadError, match="kind"):
            load_definition_text(json.dumps(doc({"name": "a", "kind": "compile"})), "json")

    def test_unknown_field(self):
        with pytest.raises(LoadError):
            load_definition_text(json.dumps(doc({"name": "a", "kind": "build", "retries": 3})), "json")

    def test_no_stages(self):
        with pytest.raises(LoadError, match="no stages"):
            PipelineDefinition.from_document(doc())

    def test_duplicate_stage(self):
        with pytest.raises(LoadError, match="Duplicate"):
            PipelineDefinition.from_document(doc({"name": "a", "kind": "build"}, {"name": "a", "kind": "build"}))

    def test_missing_dependency(self):
        with pytest.raises(LoadError, match="unknown stage"):
            PipelineDefinition.from_document(doc({"name": "a", "kind": "build", "depends_on": ["x"]}))

    def test_cycle(self):
        with pytest.raises(CycleError):
            PipelineDefinition.from_document(doc(
                {"name": "a", "kind": "build", "depends_on": ["b"]},
                {"name": "b", "kind": "build", "depends_on": ["a"]},
            ))

    def test_push_needs_upstream_build(self):
        with pytest.raises(LoadError, match="no upstream build"):
            PipelineDefinition.from_document(doc({"name": "push", "kind": "push"}))

    def test_deploy_needs_artifact(self):
        with pytest.raises(LoadError, match="artifact"):
            PipelineDefinition.from_document(doc({"name": "deploy", "kind": "deploy"}))

    def test_deploy_with_explicit_artifact(self):
        definition = PipelineDefinition.from_document(
            doc({"name": "deploy", "kind": "deploy", "params": {"artifact": "registry/app:1.2"}})
        )
        assert definition.stage("deploy").kind is AdapterKind.DEPLOY

    def test_deploy_through_transitive_build(self):
        definition = PipelineDefinition.from_document(doc(
            {"name": "build", "kind": "build"},
            {"name": "provision", "kind": "provision", "depends_on": ["build"]},
            {"name": "deploy", "kind": "deploy", "depends_on": ["provision"]},
        ))
        assert definition.graph.topological_sort() == ["build", "provision", "deploy"]


class TestDefinition:
    def test_immutable(self):
        definition = release_definition()
        with pytest.raises(Exception):
            definition.name = "other"

    def test_version_is_stable(self):
        assert release_definition().version == release_definition().version

    def test_version_changes_with_content(self):
        document = release_definition().to_document()
        document["stages"][1]["retry"]["max_attempts"] = 5
        assert PipelineDefinition.from_document(document).version != release_definition().version

    def test_round_trip_document(self):
        definition = release_definition()
        assert PipelineDefinition.from_document(definition.to_document()).to_document() == definition.to_document()

    def test_binding_defaults_to_kind(self):
        definition = PipelineDefinition.from_document(doc(
            {"name": "a", "kind": "build"},
            {"name": "b", "kind": "build", "adapter": "docker"},
        ))
        assert definition.stage("a").binding == "build"
        assert definition.stage("b").binding == "docker"

    def test_stage_lookup_missing(self):
        with pytest.raises(KeyError):
            release_definition().stage("ghost")


class TestRetryPolicy:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_seconds=1, multiplier=2, cap_seconds=5, jitter="none")
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]

    def test_full_jitter_is_bounded(self):
        policy = RetryPolicy(base_seconds=1, multiplier=2, cap_seconds=30)
        rng = random.Random(7)
        for attempt in range(1, 8):
            assert 0 <= policy.delay(attempt, rng) <= min(30, 2 ** (attempt - 1))

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
