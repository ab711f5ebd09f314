"""Pipeline templates: the ordered stage list a run is created from."""

import enum
import json
import re
from dataclasses import dataclass, field
from pathlib import Path

_VALID_STAGE_RE = re.compile(r"^[A-Za-z0-9._-]+$")

# Stages that mutate shared resources take these locks unless configured.
DEFAULT_STAGE_LOCKS = {
    "merge": ["@main-branch"],
    "deploy": ["@main-branch", "deploy-target"],
}


class GateKind(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


_GATE_ALIASES = {"auto": GateKind.AUTO, "manual": GateKind.MANUAL, "approve": GateKind.MANUAL}


@dataclass
class StageDefinition:
    id: str
    enabled: bool = True
    gate: GateKind = GateKind.AUTO
    max_iterations: int = 0
    coverage_threshold: int = 0
    timeout: int = 3600
    verify_command: str = ""
    isolate: bool = False
    locks: list[str] = field(default_factory=list)
    prompt: str = ""
    config: dict = field(default_factory=dict)

    @property
    def self_healing(self) -> bool:
        return self.gate is GateKind.AUTO and self.max_iterations > 0

    def iteration_budget(self) -> int:
        return self.max_iterations if self.self_healing else 1


@dataclass
class PipelineTemplate:
    name: str
    stages: list[StageDefinition]
    description: str = ""

    def stage(self, stage_id: str) -> StageDefinition:
        for s in self.stages:
            if s.id == stage_id:
                return s
        raise KeyError(stage_id)


def stage_to_dict(stage: StageDefinition) -> dict:
    config = dict(stage.config)
    config.update({
        "max_iterations": stage.max_iterations,
        "coverage_threshold": stage.coverage_threshold,
        "timeout": stage.timeout,
    })
    if stage.verify_command:
        config["verify_command"] = stage.verify_command
    if stage.isolate:
        config["isolate"] = True
    config["locks"] = list(stage.locks)
    if stage.prompt:
        config["prompt"] = stage.prompt
    return {
        "id": stage.id,
        "enabled": stage.enabled,
        "gate": stage.gate.value,
        "config": config,
    }


def parse_stage(raw: dict, template: str = "", defaults: dict | None = None) -> StageDefinition:
    if not isinstance(raw, dict) or "id" not in raw:
        raise ValueError(f"Template '{template}': every stage needs an 'id'")
    stage_id = raw["id"]
    if not isinstance(stage_id, str) or not _VALID_STAGE_RE.match(stage_id) or stage_id.endswith("-context"):
        raise ValueError(f"Template '{template}': invalid stage id {stage_id!r}")
    gate_raw = str(raw.get("gate", "auto")).lower()
    if gate_raw not in _GATE_ALIASES:
        raise ValueError(f"Template '{template}': stage '{stage_id}' has unknown gate '{gate_raw}'")

    config = dict(defaults or {})
    config.update(raw.get("config", {}) or {})
    known = {
        "max_iterations": config.pop("max_iterations", 0),
        "coverage_threshold": config.pop("coverage_threshold", 0),
        "timeout": config.pop("timeout", 3600),
        "verify_command": config.pop("verify_command", ""),
        "isolate": config.pop("isolate", False),
        "locks": config.pop("locks", None),
        "prompt": config.pop("prompt", ""),
    }
    try:
        max_iterations = int(known["max_iterations"] or 0)
        coverage = int(known["coverage_threshold"] or 0)
        timeout = int(known["timeout"] or 3600)
    except (TypeError, ValueError):
        raise ValueError(f"Template '{template}': stage '{stage_id}' has a non-integer limit") from None
    if max_iterations < 0:
        raise ValueError(f"Template '{template}': stage '{stage_id}' max_iterations must be >= 0")

    locks = known["locks"]
    if locks is None:
        locks = list(DEFAULT_STAGE_LOCKS.get(stage_id, []))

    return StageDefinition(
        id=stage_id,
        enabled=bool(raw.get("enabled", True)),
        gate=_GATE_ALIASES[gate_raw],
        max_iterations=max_iterations,
        coverage_threshold=coverage,
        timeout=timeout,
        verify_command=known["verify_command"] or "",
        isolate=bool(known["isolate"]),
        locks=list(locks),
        prompt=known["prompt"] or "",
        config=config,
    )


def parse_template(data: dict, source: str = "") -> PipelineTemplate:
    name = data.get("name") or source or "custom"
    stages_raw = data.get("stages")
    if not isinstance(stages_raw, list) or not stages_raw:
        raise ValueError(f"Template '{name}': 'stages' must be a non-empty list")
    defaults = data.get("defaults", {})
    stages = [parse_stage(s, name, defaults) for s in stages_raw]
    seen: set[str] = set()
    for s in stages:
        if s.id in seen:
            raise ValueError(f"Template '{name}': duplicate stage '{s.id}'")
        seen.add(s.id)
    return PipelineTemplate(name=name, stages=stages, description=data.get("description", ""))


def load_template(path: Path) -> PipelineTemplate:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Template not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Template {path} is not valid JSON: {e}") from None
    return parse_template(data, path.stem)


def standard_template() -> PipelineTemplate:
    """intake → plan → build → test → review → merge → deploy."""
    return parse_template({
        "name": "standard",
        "description": "Full delivery pipeline with a self-healing build loop",
        "stages": [
            {"id": "intake", "gate": "auto"},
            {"id": "plan", "gate": "auto"},
            {"id": "build", "gate": "auto", "config": {"max_iterations": 20}},
            {"id": "test", "gate": "auto", "config": {"max_iterations": 5, "coverage_threshold": 80}},
            {"id": "review", "gate": "auto"},
            {"id": "merge", "gate": "approve"},
            {"id": "deploy", "enabled": False, "gate": "approve"},
        ],
    })


BUILTIN_TEMPLATES = {"standard": standard_template}


def resolve_template(name_or_path: str) -> PipelineTemplate:
    if name_or_path in BUILTIN_TEMPLATES:
        return BUILTIN_TEMPLATES[name_or_path]()
    return load_template(Path(name_or_path))
