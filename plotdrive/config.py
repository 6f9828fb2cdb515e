"""Configuration models for the plotter machine, link and job execution."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MachineModel(Enum):
    """AxiDraw hardware variants with their travel in millimetres."""

    V3 = ("AxiDraw V3", 215.9, 279.4)
    V3A3 = ("AxiDraw V3/A3", 279.4, 431.8)
    SEA3 = ("AxiDraw SE/A3", 279.4, 431.8)
    MINI = ("AxiDraw Mini", 160.0, 101.0)

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def width_mm(self) -> float:
        return self.value[1]

    @property
    def height_mm(self) -> float:
        return self.value[2]


class StepMode(Enum):
    """Global microstepping modes understood by the ``EM`` command."""

    DISABLE = 0
    SIXTEENTH = 1
    EIGHTH = 2
    QUARTER = 3
    HALF = 4
    FULL = 5


@dataclass
class Workspace:
    """Physical travel of the carriage."""

    width_mm: float = MachineModel.V3.width_mm
    height_mm: float = MachineModel.V3.height_mm

    def as_tuple(self) -> Tuple[float, float]:
        return self.width_mm, self.height_mm

    def contains(self, x: float, y: float, *, eps: float = 1e-9) -> bool:
        return -eps <= x <= self.width_mm + eps and -eps <= y <= self.height_mm + eps

    @classmethod
    def for_model(cls, model: MachineModel) -> "Workspace":
        return cls(width_mm=model.width_mm, height_mm=model.height_mm)


@dataclass
class MotionSettings:
    """Kinematic limits, in millimetres and seconds."""

    max_velocity: float = 40.0  # mm/s
    max_acceleration: float = 200.0  # mm/s^2
    junction_deviation: float = 0.05  # mm, cornering tolerance
    tolerance: float = 0.05  # mm, curve flattening tolerance

    def validate(self) -> None:
        for name in ("max_velocity", "max_acceleration", "junction_deviation", "tolerance"):
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")


@dataclass
class PenSettings:
    """Servo calibration expressed as percent of the servo range."""

    up_position: int = 60
    down_position: int = 30
    up_rate: int = 150
    down_rate: int = 150
    up_delay_ms: int = 150
    down_delay_ms: int = 150

    servo_min: int = 7500
    servo_max: int = 28000

    def to_servo(self, percent: float) -> int:
        percent = max(0.0, min(100.0, float(percent)))
        return int(self.servo_min + (self.servo_max - self.servo_min) * percent / 100.0)


@dataclass
class LinkSettings:
    """Serial link parameters and protocol deadlines (seconds)."""

    port: Optional[str] = None  # None -> auto-detect an EiBotBoard
    baudrate: int = 115200
    read_timeout_s: float = 0.05
    connect_timeout_s: float = 2.0
    connect_retries: int = 3
    connect_backoff_s: float = 0.5
    command_timeout_s: float = 1.0
    command_retries: int = 2
    motion_timeout_margin_s: float = 1.0
    checksums: bool = False


@dataclass
class SessionSettings:
    """Job execution behaviour."""

    timeslice_ms: int = 30
    return_home: bool = True
    zero_on_start: bool = True
    idle_timeout_s: float = 60.0


@dataclass
class MachineConfig:
    """Aggregate configuration consumed by the planner, driver and session."""

    model: MachineModel = MachineModel.V3
    workspace: Workspace = field(default_factory=Workspace)
    steps_per_mm_x: float = 80.0
    steps_per_mm_y: float = 80.0
    step_mode: StepMode = StepMode.SIXTEENTH
    motion: MotionSettings = field(default_factory=MotionSettings)
    pen: PenSettings = field(default_factory=PenSettings)
    link: LinkSettings = field(default_factory=LinkSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def for_model(cls, model: MachineModel, **kwargs: Any) -> "MachineConfig":
        return cls(model=model, workspace=Workspace.for_model(model), **kwargs)

    @property
    def steps_per_mm(self) -> float:
        """Resolution used to convert scalar speeds; the finer axis is not trusted."""
        return min(self.steps_per_mm_x, self.steps_per_mm_y)

    def to_steps(self, x: float, y: float) -> Tuple[int, int]:
        return int(round(x * self.steps_per_mm_x)), int(round(y * self.steps_per_mm_y))

    # ------------------------------- serialisation ---------------------------
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["model"] = self.model.name
        data["step_mode"] = self.step_mode.name
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MachineConfig":
        model = MachineModel[data.get("model", MachineModel.V3.name)]
        workspace_data = data.get("workspace")
        workspace = (
            _build(Workspace, workspace_data) if workspace_data is not None else Workspace.for_model(model)
        )
        cfg = MachineConfig(
            model=model,
            workspace=workspace,
            steps_per_mm_x=float(data.get("steps_per_mm_x", 80.0)),
            steps_per_mm_y=float(data.get("steps_per_mm_y", 80.0)),
            step_mode=StepMode[data.get("step_mode", StepMode.SIXTEENTH.name)],
            motion=_build(MotionSettings, data.get("motion", {})),
            pen=_build(PenSettings, data.get("pen", {})),
            link=_build(LinkSettings, data.get("link", {})),
            session=_build(SessionSettings, data.get("session", {})),
        )
        cfg.motion.validate()
        return cfg


def _build(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**data)


__all__ = [
    "MachineModel",
    "StepMode",
    "Workspace",
    "MotionSettings",
    "PenSettings",
    "LinkSettings",
    "SessionSettings",
    "MachineConfig",
]
