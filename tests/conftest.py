# Copyright (c) Syntropy Systems
"""Pytest fixtures for qcpool tests."""

from __future__ import annotations

import json
import sys
import tempfile
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from qcpool.models.job import RunOptions

# Stand-in for the analysis tool.  Behaviour per participant comes from the
# JSON plan named by FAKE_TOOL_PLAN; every invocation leaves a record in
# FAKE_TOOL_LOG.
FAKE_TOOL = """\
import json
import os
import subprocess
import sys
import time

argv = sys.argv[1:]
input_view, out_dir = argv[0], argv[1]
label = argv[argv.index("--participant-label") + 1]
work_dir = argv[argv.index("--work-dir") + 1]
plan = {}
if os.environ.get("FAKE_TOOL_PLAN"):
    with open(os.environ["FAKE_TOOL_PLAN"]) as f:
        plan = json.load(f).get(label, {})

record = {
    "label": label,
    "pid": os.getpid(),
    "argv": argv,
    "cwd": os.getcwd(),
    "work_dir": work_dir,
    "input_view": sorted(os.listdir(input_view)),
    "env_participant": os.environ.get("QCPOOL_PARTICIPANT"),
    "started": time.time(),
}
log_dir = os.environ["FAKE_TOOL_LOG"]
log_path = os.path.join(log_dir, "%s-%d.json" % (label, os.getpid()))

def save():
    with open(log_path, "w") as f:
        json.dump(record, f)

save()
if plan.get("child_marker"):
    subprocess.Popen([
        sys.executable, "-c",
        "import time\\nwhile True:\\n    open(%r, 'a').write('x')\\n    time.sleep(0.05)"
        % plan["child_marker"],
    ])
if plan.get("stdout_bytes"):
    sys.stdout.write("o" * plan["stdout_bytes"])
    sys.stdout.flush()
sys.stdout.write(plan.get("stdout", "processing %s\\n" % label))
sys.stderr.write(plan.get("stderr", ""))
sys.stdout.flush()
sys.stderr.flush()
time.sleep(plan.get("sleep", 0))
if plan.get("write", True) and plan.get("exit", 0) == 0:
    os.makedirs(os.path.join(out_dir, "sub-" + label), exist_ok=True)
    with open(os.path.join(out_dir, "sub-" + label, "report.txt"), "w") as f:
        f.write("done")
record["finished"] = time.time()
save()
sys.exit(plan.get("exit", 0))
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@dataclass
class FakeTool:
    """Handle on the fake analysis tool and its invocation records."""

    path: Path
    plan_path: Path
    log_dir: Path
    plan: dict[str, dict[str, object]] = field(default_factory=dict)

    def set(self, label: str, **behaviour: object) -> None:
        self.plan[label] = behaviour
        _ = self.plan_path.write_text(json.dumps(self.plan))

    def invocations(self, label: str | None = None) -> list[dict[str, object]]:
        records = [json.loads(p.read_text()) for p in sorted(self.log_dir.glob("*.json"))]
        if label is not None:
            records = [r for r in records if r["label"] == label]
        return records

    def max_overlap(self) -> int:
        """Most invocations alive at the same moment."""
        points: list[tuple[float, int]] = []
        for record in self.invocations():
            points.append((float(record["started"]), 1))
            points.append((float(record.get("finished", record["started"])), -1))
        current = best = 0
        for _, delta in sorted(points):
            current += delta
            best = max(best, current)
        return best


@dataclass
class Dataset:
    """Input tree, output root and working directory for one test run."""

    input_root: Path
    output_root: Path
    work_dir: Path
    tool: FakeTool

    def options(self, **overrides: object) -> RunOptions:
        values: dict[str, object] = {
            "input_root": self.input_root,
            "output_root": self.output_root,
            "work_dir": self.work_dir,
            "executable": str(self.tool.path),
            "kill_grace_period": 1.0,
            "kill_confirm_timeout": 5.0,
        }
        values.update(overrides)
        return RunOptions(**values)

    def add_participant(self, label: str) -> None:
        (self.input_root / f"sub-{label}" / "anat").mkdir(parents=True, exist_ok=True)


@pytest.fixture
def fake_tool(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> FakeTool:
    """Write the fake tool and point it at a plan and log directory."""
    path = temp_dir / "fake-mriqc"
    _ = path.write_text(f"#!{sys.executable}\n{FAKE_TOOL}")
    path.chmod(0o755)
    log_dir = temp_dir / "invocations"
    log_dir.mkdir()
    plan_path = temp_dir / "plan.json"
    _ = plan_path.write_text("{}")
    monkeypatch.setenv("FAKE_TOOL_PLAN", str(plan_path))
    monkeypatch.setenv("FAKE_TOOL_LOG", str(log_dir))
    return FakeTool(path=path, plan_path=plan_path, log_dir=log_dir)


@pytest.fixture
def dataset(temp_dir: Path, fake_tool: FakeTool) -> Dataset:
    """Create an input tree with participants bob, susan, carol and dave."""
    input_root = temp_dir / "bids"
    input_root.mkdir()
    _ = (input_root / "dataset_description.json").write_text('{"Name": "test"}')
    _ = (input_root / "participants.tsv").write_text("participant_id\n")
    output_root = temp_dir / "out"
    output_root.mkdir()
    work_dir = temp_dir / "work"
    work_dir.mkdir()
    ds = Dataset(input_root, output_root, work_dir, fake_tool)
    for label in ("bob", "susan", "carol", "dave"):
        ds.add_participant(label)
    return ds
