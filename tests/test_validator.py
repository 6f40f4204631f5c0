"""Tests for static workflow graph validation."""
import pytest

from models.schemas import Workflow
from workflow.validator import ValidationCode, WorkflowValidator, validate_workflow


def build_workflow(nodes, edges, **kwargs) -> Workflow:
    return Workflow.model_validate({"nodes": nodes, "edges": edges, **kwargs})


def codes(issues) -> list[str]:
    return [i.code for i in issues]


def linear(*types_and_data, extra_edges=()) -> Workflow:
    nodes = [{"id": f"n{i}", "type": t, "data": d} for i, (t, d) in enumerate(types_and_data)]
    edges = [{"id": f"e{i}", "source": f"n{i}", "target": f"n{i + 1}"} for i in range(len(nodes) - 1)]
    return build_workflow(nodes, edges + list(extra_edges))


class TestStructure:
    def test_sample_workflow_is_valid(self, sample_workflow):
        assert validate_workflow(sample_workflow) == []
        assert WorkflowValidator().is_valid(sample_workflow)

    def test_empty_workflow(self):
        assert codes(validate_workflow(build_workflow([], []))) == ["NO_NODES"]

    def test_duplicate_ids_are_fatal(self):
        wf = build_workflow(
            [{"id": "a", "type": "greeting", "data": {"text": "hi"}},
             {"id": "a", "type": "end", "data": {}}],
            [{"id": "e1", "source": "a", "target": "ghost"}],
        )
        # Later stages (broken edge) are skipped
        assert codes(validate_workflow(wf)) == ["DUPLICATE_NODE_ID"]

    def test_missing_id(self):
        wf = build_workflow([{"id": "", "type": "end", "data": {}}], [])
        assert codes(validate_workflow(wf)) == ["MISSING_NODE_ID"]

    def test_broken_edge(self):
        wf = linear(("greeting", {"text": "hi"}), ("end", {}),
                    extra_edges=[{"id": "bad", "source": "n1", "target": "nowhere"}])
        issues = validate_workflow(wf)
        assert codes(issues) == ["BROKEN_EDGE"]
        assert issues[0].edge_id == "bad"

    def test_orphan_node(self):
        wf = build_workflow(
            [{"id": "start", "type": "greeting", "data": {"text": "hi"}},
             {"id": "stray", "type": "greeting", "data": {"text": "lost"}},
             {"id": "done", "type": "end", "data": {}}],
            [{"id": "e1", "source": "start", "target": "done"},
             {"id": "e2", "source": "stray", "target": "done"}],
        )
        issues = validate_workflow(wf)
        assert [(i.code, i.node_id) for i in issues] == [
            ("ORPHAN_NODE", "stray"), ("UNREACHABLE_NODE", "stray"),
        ]

    def test_unreachable_node_inside_cycle(self):
        wf = build_workflow(
            [{"id": "start", "type": "greeting", "data": {"text": "hi"}},
             {"id": "done", "type": "end", "data": {}},
             {"id": "x", "type": "set_variable", "data": {"variable": "a", "value": 1}},
             {"id": "y", "type": "set_variable", "data": {"variable": "b", "value": 2}}],
            [{"id": "e1", "source": "start", "target": "done"},
             {"id": "e2", "source": "x", "target": "y"},
             {"id": "e3", "source": "y", "target": "x"}],
        )
        found = codes(validate_workflow(wf))
        assert found.count("UNREACHABLE_NODE") == 2
        assert "CYCLE_DETECTED" in found

    def test_no_end(self):
        wf = linear(("greeting", {"text": "hi"}), ("set_variable", {"variable": "a"}))
        assert codes(validate_workflow(wf)) == ["NO_END"]

    def test_unreachable_end(self):
        wf = build_workflow(
            [{"id": "start", "type": "greeting", "data": {"text": "hi"}},
             {"id": "mid", "type": "set_variable", "data": {"variable": "a"}},
             {"id": "done", "type": "end", "data": {}}],
            [{"id": "e1", "source": "start", "target": "mid"}],
        )
        assert codes(validate_workflow(wf)) == ["ORPHAN_NODE", "UNREACHABLE_NODE", "UNREACHABLE_END"]

    def test_no_entry_when_everything_has_incoming(self):
        wf = build_workflow(
            [{"id": "a", "type": "greeting", "data": {"text": "hi"}},
             {"id": "b", "type": "end", "data": {}}],
            [{"id": "e1", "source": "a", "target": "b"},
             {"id": "e2", "source": "b", "target": "a"}],
        )
        found = codes(validate_workflow(wf))
        assert "NO_ENTRY" in found
        assert "CYCLE_DETECTED" in found


class TestCycles:
    def test_cycle_reachable_from_entry(self):
        wf = build_workflow(
            [{"id": "start", "type": "greeting", "data": {"text": "hi"}},
             {"id": "a", "type": "set_variable", "data": {"variable": "x"}},
             {"id": "b", "type": "set_variable", "data": {"variable": "y"}},
             {"id": "done", "type": "end", "data": {}}],
            [{"id": "e1", "source": "start", "target": "a"},
             {"id": "e2", "source": "a", "target": "b"},
             {"id": "e3", "source": "b", "target": "a", "sourceHandle": "again"},
             {"id": "e4", "source": "b", "target": "done"}],
        )
        issues = validate_workflow(wf)
        assert codes(issues) == ["CYCLE_DETECTED"]
        assert issues[0].edge_id == "e3"
        assert issues[0].node_id == "a"

    def test_self_loop(self):
        wf = linear(("greeting", {"text": "hi"}), ("end", {}),
                    extra_edges=[{"id": "self", "source": "n0", "target": "n0", "sourceHandle": "x"}])
        found = codes(validate_workflow(wf))
        assert "CYCLE_DETECTED" in found

    def test_diamond_is_not_a_cycle(self):
        wf = build_workflow(
            [{"id": "start", "type": "conditional", "data": {"variable": "v", "value": 1}},
             {"id": "yes", "type": "greeting", "data": {"text": "yes"}},
             {"id": "no", "type": "greeting", "data": {"text": "no"}},
             {"id": "done", "type": "end", "data": {}}],
            [{"id": "e1", "source": "start", "target": "yes", "sourceHandle": "true"},
             {"id": "e2", "source": "start", "target": "no", "sourceHandle": "false"},
             {"id": "e3", "source": "yes", "target": "done"},
             {"id": "e4", "source": "no", "target": "done"}],
        )
        assert validate_workflow(wf) == []


class TestNodeChecks:
    def test_input_without_prompt(self):
        wf = linear(("input", {}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["MISSING_PROMPT"]

    def test_input_prompt_reference_must_exist(self):
        wf = linear(("input", {"promptAudioNodeId": "ghost"}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["MISSING_PROMPT"]

    @pytest.mark.parametrize("timeout", [0, 61])
    def test_input_timeout_range(self, timeout):
        wf = linear(("input", {"text": "Pick", "timeout": timeout}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["INVALID_TIMEOUT"]

    @pytest.mark.parametrize("attempts", [0, 11])
    def test_input_max_attempts_range(self, attempts):
        wf = linear(("input", {"text": "Pick", "maxAttempts": attempts}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["INVALID_MAX_ATTEMPTS"]

    def test_conditional_needs_both_branches(self):
        wf = build_workflow(
            [{"id": "c", "type": "conditional", "data": {"preset": "business_hours"}},
             {"id": "done", "type": "end", "data": {}}],
            [{"id": "e1", "source": "c", "target": "done", "sourceHandle": "true"}],
        )
        issues = validate_workflow(wf)
        assert codes(issues) == ["MISSING_BRANCH"]
        assert "'false'" in issues[0].message

    def test_audio_text_mode_needs_text(self):
        wf = linear(("audio", {"mode": "text", "text": "  "}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["MISSING_TEXT"]

    def test_audio_file_mode_needs_asset(self):
        wf = linear(("audio", {"mode": "upload"}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["MISSING_AUDIO"]
        ok = linear(("audio", {"mode": "upload", "audioAssetId": "a1"}), ("end", {}))
        assert validate_workflow(ok) == []

    def test_duplicate_source_handle(self):
        wf = build_workflow(
            [{"id": "menu", "type": "input", "data": {"text": "Pick"}},
             {"id": "a", "type": "end", "data": {}},
             {"id": "b", "type": "end", "data": {}}],
            [{"id": "e1", "source": "menu", "target": "a", "sourceHandle": "1"},
             {"id": "e2", "source": "menu", "target": "b", "sourceHandle": "1"}],
        )
        assert codes(validate_workflow(wf)) == ["DUPLICATE_SOURCE_HANDLE"]

    def test_unknown_type(self):
        wf = linear(("greeting", {"text": "hi"}), ("teleport", {}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["UNKNOWN_NODE_TYPE"]

    def test_malformed_data(self):
        wf = linear(("input", {"text": "Pick", "numDigits": "many"}), ("end", {}))
        assert codes(validate_workflow(wf)) == ["MALFORMED_NODE_DATA"]


class TestDeterminism:
    def test_revalidation_is_identical(self):
        wf = build_workflow(
            [{"id": "a", "type": "input", "data": {}},
             {"id": "b", "type": "conditional", "data": {}},
             {"id": "c", "type": "teleport", "data": {}}],
            [{"id": "e1", "source": "a", "target": "b"},
             {"id": "e2", "source": "b", "target": "a"},
             {"id": "e3", "source": "b", "target": "zzz"}],
        )
        first = validate_workflow(wf)
        second = validate_workflow(wf)
        assert [i.model_dump() for i in first] == [i.model_dump() for i in second]
        assert ValidationCode.CYCLE_DETECTED.value in codes(first)
