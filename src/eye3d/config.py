"""检测器配置（dataclass）与 YAML/JSON 加载。

目标：
- 用 dataclass 表达 `Detector3D` 的全部可调参数（阈值、缓冲长度、更新节奏等）
- 支持从 `.yaml/.yml/.json` 加载

说明：
- 所有字段都有默认值，配置文件只需写要覆盖的键。
- 未知键或非法取值直接抛 `RuntimeError`（fail fast），避免拼写错误被静默忽略。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal, cast


def _load_mapping(path: Path) -> dict[str, Any]:
    path = Path(path)
    suf = path.suffix.lower()

    if suf == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("PyYAML 未安装，无法读取 YAML 配置") from exc

        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    else:
        raise RuntimeError(f"不支持的配置文件类型: {path}（仅支持 .json/.yaml/.yml）")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RuntimeError("配置文件顶层必须是对象（dict）")

    return data


def _as_optional_path(x: Any) -> Path | None:
    if x is None:
        return None
    s = str(x).strip()
    if not s:
        return None
    return Path(s).expanduser()


_LONG_TERM_MODE = Literal["blocking", "async"]


def _as_long_term_mode(x: Any, default: str) -> _LONG_TERM_MODE:
    s = str(x if x is not None else default).strip().lower()
    if s not in {"blocking", "async"}:
        raise RuntimeError(f"unknown long_term_mode: {s} (expected: blocking|async)")
    return cast(_LONG_TERM_MODE, s)


def _as_float(name: str, x: Any) -> float:
    try:
        return float(x)
    except (TypeError, ValueError) as exc:
        raise RuntimeError(f"{name} must be a number, got {x!r}") from exc


def _as_probability(name: str, x: Any) -> float:
    v = _as_float(name, x)
    if not 0.0 <= v <= 1.0:
        raise RuntimeError(f"{name} must be in [0, 1], got {v}")
    return v


def _as_positive_int(name: str, x: Any) -> int:
    f = _as_float(name, x)
    if isinstance(x, bool) or not f.is_integer():
        raise RuntimeError(f"{name} must be an integer, got {x!r}")
    v = int(f)
    if v <= 0:
        raise RuntimeError(f"{name} must be a positive integer, got {x}")
    return v


def _as_non_negative_float(name: str, x: Any) -> float:
    v = _as_float(name, x)
    if v < 0.0:
        raise RuntimeError(f"{name} must be >= 0, got {x}")
    return v


def _as_bool(name: str, x: Any) -> bool:
    if isinstance(x, bool):
        return x
    raise RuntimeError(f"{name} must be a boolean, got {x!r}")


@dataclass(frozen=True)
class DetectorConfig:
    # 置信度阈值
    threshold_swirski: float = 0.7
    threshold_kalman: float = 0.98
    threshold_short_term: float = 0.8
    threshold_long_term: float = 0.98

    # 长期模型的分格缓冲与遗忘策略
    long_term_buffer_size: int = 30
    long_term_forget_time: float = 5.0
    long_term_forget_observations: int = 300
    long_term_mode: _LONG_TERM_MODE = "blocking"

    # 更新节奏（秒）
    model_update_interval_long_term: float = 1.0
    model_update_interval_ult_long_term: float = 10.0
    model_warmup_duration: float = 5.0

    calculate_rms_residual: bool = False

    # 折射模型：None 表示使用包内 refraction_models/ 目录
    refraction_model_dir: Path | None = None
    refraction_model_type: str = "default"
    refraction_model_degree: int = 3

    def __post_init__(self) -> None:
        for name in ("threshold_swirski", "threshold_kalman", "threshold_short_term", "threshold_long_term"):
            object.__setattr__(self, name, _as_probability(name, getattr(self, name)))
        for name in ("long_term_buffer_size", "long_term_forget_observations", "refraction_model_degree"):
            object.__setattr__(self, name, _as_positive_int(name, getattr(self, name)))
        for name in (
            "long_term_forget_time",
            "model_update_interval_long_term",
            "model_update_interval_ult_long_term",
            "model_warmup_duration",
        ):
            object.__setattr__(self, name, _as_non_negative_float(name, getattr(self, name)))

        object.__setattr__(self, "long_term_mode", _as_long_term_mode(self.long_term_mode, "blocking"))
        object.__setattr__(
            self, "calculate_rms_residual", _as_bool("calculate_rms_residual", self.calculate_rms_residual)
        )
        object.__setattr__(self, "refraction_model_dir", _as_optional_path(self.refraction_model_dir))

        model_type = str(self.refraction_model_type).strip()
        if not model_type:
            raise RuntimeError("refraction_model_type must not be empty")
        object.__setattr__(self, "refraction_model_type", model_type)

    @staticmethod
    def from_mapping(data: dict[str, Any]) -> "DetectorConfig":
        known = {f.name for f in fields(DetectorConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise RuntimeError(f"unknown detector config keys: {', '.join(unknown)}")
        return DetectorConfig(**data)


def load_detector_config(path: Path | str) -> DetectorConfig:
    """从 `.json/.yaml/.yml` 加载检测器配置。"""

    p = Path(path).expanduser()
    return DetectorConfig.from_mapping(_load_mapping(p))


__all__ = ["DetectorConfig", "load_detector_config"]
