import json
import subprocess
import sys
from pathlib import Path

from ncs_builder import ScriptBuilder, action_script, globals_script

from ncsdisasm import ListingRenderer


def _cli() -> str:
    return str(Path(__file__).resolve().parents[1] / "ncs_disasm.py")


def test_cli_writes_listing(tmp_path: Path) -> None:
    script_path = tmp_path / "sample.ncs"
    script_path.write_bytes(globals_script().build())

    result = subprocess.run(
        [
            sys.executable,
            _cli(),
            str(script_path),
            "--analyze-stack",
            "--actions",
            str(tmp_path / "missing.json"),
        ],
        check=True,
        capture_output=True,
        text=True,
    )

    assert "listing written to" in result.stdout
    listing_path = tmp_path / "sample.cfg.txt"
    assert listing_path.exists()
    text = listing_path.read_text("utf-8")
    assert "; global: 0x00000015" in text
    assert "_start: ; type=start" in text
    assert "main: ; type=main callers=0x00000019" in text
    assert "; stack analysis: ok, 3 variables, 1 globals" in text


def test_cli_reports_stack_analysis_failure(tmp_path: Path) -> None:
    script_path = tmp_path / "action.ncs"
    script_path.write_bytes(action_script().build())
    actions_path = tmp_path / "actions.json"
    actions_path.write_text(
        json.dumps({"0": {"name": "PrintString", "returns": "void", "params": ["string"]}}),
        "utf-8",
    )
    output_path = tmp_path / "listing.txt"

    result = subprocess.run(
        [
            sys.executable,
            _cli(),
            str(script_path),
            "--analyze-stack",
            "--actions",
            str(actions_path),
            "--output",
            str(output_path),
        ],
        check=True,
        capture_output=True,
        text=True,
    )

    assert "stack analysis failed" in result.stdout
    assert "stack analysis: failed" in output_path.read_text("utf-8")


def test_cli_rejects_malformed_scripts(tmp_path: Path) -> None:
    script_path = tmp_path / "broken.ncs"
    script_path.write_bytes(b"NCS V1.0B\x00\x00\x00\x0f\xff\x00")

    result = subprocess.run(
        [sys.executable, _cli(), str(script_path)],
        capture_output=True,
        text=True,
    )

    assert result.returncode != 0
    assert "failed to parse" in result.stderr
    assert "invalid opcode 0xFF" in result.stderr


def test_listing_can_hide_dead_edges() -> None:
    builder = ScriptBuilder().label("start").consti(0).jz("target").retn().label("target").retn()
    ncs = builder.load()

    full = ListingRenderer().render(ncs)
    trimmed = ListingRenderer(show_dead_edges=False).render(ncs)

    assert "(dead)" in full
    assert "(dead)" not in trimmed
    assert "(conditional-true)" in trimmed
    assert "; unreachable blocks: 0x00000019" in full
