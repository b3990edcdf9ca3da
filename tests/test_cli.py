"""Tests for the flowforge command-line interface."""

import json
import logging

import pytest

from flowforge.cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_RUN_ERROR, load_flow, main
from flowforge.graph.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def write_flow(tmp_path, nodes, edges=(), name="flow.json"):
    path = tmp_path / name
    path.write_text(json.dumps({"nodes": nodes, "edges": list(edges)}))
    return str(path)


def edge(source, target, target_port, source_port="out"):
    return {
        "id": f"{source}-{target}-{target_port}",
        "source": source,
        "source_port": source_port,
        "target": target,
        "target_port": target_port,
    }


@pytest.fixture
def adder_flow(tmp_path):
    return write_flow(
        tmp_path,
        [
            {"id": "a", "type": "NumberInput", "data": {"value": 2}},
            {"id": "b", "type": "NumberInput", "data": {"value": 3}},
            {"id": "sum", "type": "Math", "data": {"operation": "add"}},
        ],
        [edge("a", "sum", "a"), edge("b", "sum", "b")],
    )


class TestRun:
    def test_successful_run(self, adder_flow, isolated_config, capsys):
        code = main(["run", adder_flow, "--no-saved-packs"])

        assert code == EXIT_OK
        state = json.loads(capsys.readouterr().out)
        assert state["status"] == "success"
        assert state["nodes"]["sum"]["outputs"] == {"out": 5}

    def test_failed_node_exits_with_run_error(self, tmp_path, isolated_config, capsys):
        flow = write_flow(
            tmp_path,
            [
                {"id": "text", "type": "TextInput", "data": {"text": "{bad"}},
                {"id": "parse", "type": "JSONParse"},
            ],
            [edge("text", "parse", "json")],
        )

        code = main(["run", flow, "--no-saved-packs", "--error-mode", "skip-and-continue"])

        assert code == EXIT_RUN_ERROR
        state = json.loads(capsys.readouterr().out)
        assert state["nodes"]["parse"]["status"] == "error"

    def test_retry_flags(self, tmp_path, isolated_config, capsys):
        flow = write_flow(
            tmp_path,
            [
                {"id": "text", "type": "TextInput", "data": {"text": "{bad"}},
                {"id": "parse", "type": "JSONParse"},
            ],
            [edge("text", "parse", "json")],
        )

        code = main(["run", flow, "--no-saved-packs", "--max-attempts", "2", "--base-delay", "0"])

        assert code == EXIT_RUN_ERROR
        state = json.loads(capsys.readouterr().out)
        assert state["nodes"]["parse"]["attempts"] == 2

    def test_events_are_streamed_to_stderr(self, adder_flow, isolated_config, capsys):
        main(["run", adder_flow, "--no-saved-packs", "--events"])

        lines = [line for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
        types = [json.loads(line)["type"] for line in lines]
        assert types[0] == "start"
        assert types[-1] == "complete"
        assert types.count("node-complete") == 3

    def test_events_can_be_filtered(self, adder_flow, isolated_config, capsys):
        main(["run", adder_flow, "--no-saved-packs", "--events", "node-complete", "--events-node", "sum"])

        lines = [line for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
        events = [json.loads(line) for line in lines]
        assert [(e["type"], e["node_id"]) for e in events] == [("node-complete", "sum")]

    def test_unknown_event_type(self, adder_flow, isolated_config, capsys):
        assert main(["run", adder_flow, "--no-saved-packs", "--events", "nope"]) == EXIT_CONFIG_ERROR
        assert "Unknown event type: nope" in capsys.readouterr().err

    def test_unknown_node_type_is_a_config_error(self, tmp_path, isolated_config, capsys):
        flow = write_flow(tmp_path, [{"id": "x", "type": "DoesNotExist"}])

        assert main(["run", flow, "--no-saved-packs"]) == EXIT_CONFIG_ERROR
        assert "No executor found for node type: DoesNotExist" in capsys.readouterr().err

    def test_missing_file_is_a_config_error(self, tmp_path, isolated_config):
        assert main(["run", str(tmp_path / "missing.json"), "--no-saved-packs"]) == EXIT_CONFIG_ERROR

    def test_run_uses_config_file_defaults(self, tmp_path, isolated_config, capsys):
        isolated_config.write_text(
            json.dumps({"execution": {"error_mode": "skip-and-continue"}})
        )
        flow = write_flow(
            tmp_path,
            [
                {"id": "text", "type": "TextInput", "data": {"text": "{bad"}},
                {"id": "parse", "type": "JSONParse"},
                {"id": "len", "type": "TextLength"},
                {"id": "n", "type": "NumberInput", "data": {"value": 1}},
            ],
            [edge("text", "parse", "json"), edge("parse", "len", "text")],
        )

        main(["run", flow, "--no-saved-packs"])

        state = json.loads(capsys.readouterr().out)
        assert state["nodes"]["len"]["status"] == "skipped"
        assert state["nodes"]["n"]["status"] == "success"

    def test_malformed_config_value_is_a_config_error(self, adder_flow, isolated_config, capsys):
        isolated_config.write_text(json.dumps({"execution": {"error_mode": "bogus"}}))

        assert main(["run", adder_flow, "--no-saved-packs"]) == EXIT_CONFIG_ERROR
        assert "Invalid execution.error_mode" in capsys.readouterr().err


class TestValidate:
    def test_valid_flow_prints_levels(self, adder_flow, isolated_config, capsys):
        assert main(["validate", adder_flow, "--no-saved-packs"]) == EXIT_OK

        out = capsys.readouterr().out
        assert "Valid: 3 node(s), 2 edge(s)" in out
        assert "level 0: a, b" in out
        assert "level 1: sum" in out

    def test_cycle_is_invalid(self, tmp_path, isolated_config, capsys):
        flow = write_flow(
            tmp_path,
            [{"id": "x", "type": "ToString"}, {"id": "y", "type": "ToString"}],
            [edge("x", "y", "value"), edge("y", "x", "value")],
        )

        assert main(["validate", flow, "--no-saved-packs"]) == EXIT_CONFIG_ERROR
        assert "Invalid: Circular dependency" in capsys.readouterr().out

    def test_pack_types_need_the_pack(self, tmp_path, isolated_config):
        flow = write_flow(tmp_path, [{"id": "pi", "type": "math:Pi"}])

        assert main(["validate", flow, "--no-saved-packs"]) == EXIT_CONFIG_ERROR
        assert main(["validate", flow, "--no-saved-packs", "--pack", "math"]) == EXIT_OK


class TestTypes:
    def test_lists_core_types_by_category(self, isolated_config, capsys):
        assert main(["types", "--no-saved-packs"]) == EXIT_OK

        out = capsys.readouterr().out
        assert "Input:" in out
        assert "  Debug (error-resilient)" in out
        assert "math:Sin" not in out

    def test_pack_flag_adds_types(self, isolated_config, capsys):
        assert main(["types", "--no-saved-packs", "--pack", "math", "--json"]) == EXIT_OK

        types = [spec["type"] for spec in json.loads(capsys.readouterr().out)]
        assert "math:Sin" in types
        assert "Math" in types

    def test_unknown_pack(self, isolated_config, capsys):
        assert main(["types", "--no-saved-packs", "--pack", "nope"]) == EXIT_CONFIG_ERROR
        assert "Unknown pack: nope" in capsys.readouterr().err


def test_load_flow_rejects_malformed_files(tmp_path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{")
    with pytest.raises(ConfigurationError, match="Cannot read flow"):
        load_flow(bad_json)

    bad_shape = tmp_path / "shape.json"
    bad_shape.write_text(json.dumps({"nodes": [{"id": "a"}]}))
    with pytest.raises(ConfigurationError, match="Invalid flow"):
        load_flow(bad_shape)
