"""Integration tests for the render_chat_video CLI."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import List

SCRIPT_MESSAGES = [
    {"text": "Are we still on for Friday?", "sender": "person1"},
    {"text": "Yes! Booked the table for eight.", "sender": "person2"},
    {"text": "Perfect", "sender": "A"},
]


def run_render_chat_video(args: List[str], repo_root: Path) -> subprocess.CompletedProcess[str]:
    """Run render_chat_video.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(repo_root / "render_chat_video.py"), *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
    )


def write_script(path: Path, messages: list[dict[str, str]]) -> None:
    payload = {
        "messages": messages,
        "voiceSettings": {"person1Voice": "voice-a", "person2Voice": "voice-b"},
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def emit_plan_args(script_path: Path, work_dir: Path) -> List[str]:
    return [
        "--script",
        str(script_path),
        "--durations",
        "1.0,1.5,0.5",
        "--width",
        "1080",
        "--height",
        "1920",
        "--work-dir",
        str(work_dir),
        "--emit-plan",
    ]


def test_emit_plan_outputs_layers(tmp_path: Path) -> None:
    """The plan lists the frame layer plus one layer per interval."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.json"
    write_script(script_path, SCRIPT_MESSAGES)

    result = run_render_chat_video(emit_plan_args(script_path, tmp_path / "work"), repo_root)

    assert result.returncode == 0, result.stderr
    payload = json.loads(result.stdout)
    assert payload["start_times"] == [0.0, 1.5, 3.5]
    assert payload["total_duration_seconds"] == 4.0
    assert len(payload["intervals"]) == 6
    assert len(payload["layers"]) == 7
    assert payload["layers"][0]["end_seconds"] is None
    assert payload["container"] == {"x": 54, "y": 58, "width": 972, "height": 1056}
    for bubble in payload["bubbles"]:
        assert Path(bubble["path"]).exists()


def test_emit_plan_is_deterministic(tmp_path: Path) -> None:
    """The same script and work directory give byte-identical plans."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.json"
    write_script(script_path, SCRIPT_MESSAGES)
    args = emit_plan_args(script_path, tmp_path / "work")

    first = run_render_chat_video(args, repo_root)
    second = run_render_chat_video(args, repo_root)

    assert first.returncode == 0, first.stderr
    assert first.stdout == second.stdout


def test_invalid_sender_is_rejected(tmp_path: Path) -> None:
    """Unknown senders fail with a stable code."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.json"
    write_script(script_path, [{"text": "hi", "sender": "person3"}])

    result = run_render_chat_video(
        [
            "--script",
            str(script_path),
            "--durations",
            "1.0",
            "--width",
            "1080",
            "--height",
            "1920",
            "--emit-plan",
        ],
        repo_root,
    )

    assert result.returncode == 1
    assert "chat_video.input.invalid_sender" in result.stderr


def test_emit_plan_requires_durations(tmp_path: Path) -> None:
    """Plans need explicit durations."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.json"
    write_script(script_path, SCRIPT_MESSAGES)

    result = run_render_chat_video(
        ["--script", str(script_path), "--width", "1080", "--height", "1920", "--emit-plan"],
        repo_root,
    )

    assert result.returncode == 1
    assert "chat_video.input.invalid_config" in result.stderr


def test_small_frame_reports_geometry_error(tmp_path: Path) -> None:
    """A frame too narrow for the bubbles fails in the geometry stage."""
    repo_root = Path(__file__).resolve().parents[1]
    script_path = tmp_path / "script.json"
    write_script(script_path, SCRIPT_MESSAGES)
    args = emit_plan_args(script_path, tmp_path / "work")
    args[args.index("--width") + 1] = "480"

    result = run_render_chat_video(args, repo_root)

    assert result.returncode == 1
    assert "chat_video.geometry.container_too_small" in result.stderr
    assert "[geometry]" in result.stderr


def test_missing_script_file(tmp_path: Path) -> None:
    """A missing script is reported as an input error."""
    repo_root = Path(__file__).resolve().parents[1]

    result = run_render_chat_video(
        ["--script", str(tmp_path / "missing.json"), "--emit-plan"], repo_root
    )

    assert result.returncode == 1
    assert "chat_video.input.file_error" in result.stderr
