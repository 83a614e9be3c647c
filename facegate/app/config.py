import dataclasses
import logging
import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATHS = [
    os.environ.get("FACEGATE_CONFIG", ""),
    ".facegate.yaml",
    "./config.yaml",
    "/etc/facegate/config.yaml",
]


@dataclass
class CameraConfig:
    device_index: int = 0
    # Ideal resolution only; never forced higher to bound per-frame inference cost
    width: int = 640
    height: int = 480
    fps: int = 30
    max_read_failures: int = 30


@dataclass
class BackendConfig:
    face_backend: str = "opencv"  # opencv (haar) | opencv_dnn
    # Embedder backend: 'dct' (fallback) | 'onnx_arcface'
    embedder_backend: str = "dct"
    # Expression backend: 'haar_smile' (fallback) | 'onnx_ferplus'
    expression_backend: str = "haar_smile"
    model_dir: Optional[str] = None
    landmarker_path: Optional[str] = None
    threads: int = max(1, os.cpu_count() - 1 if os.cpu_count() else 1)


@dataclass
class Thresholds:
    # Raw euclidean distance between embeddings, not normalized
    match_distance_threshold: float = 0.55
    enrollment_quality_threshold: float = 0.75
    min_detection_score: float = 0.5


@dataclass
class SessionConfig:
    detection_min_interval_ms: int = 100
    settle_delay_ms: int = 1400
    input_size: int = 128
    enrollment_input_size: int = 320


@dataclass
class ChallengeConfig:
    preset: str = "expressions"  # expressions | blink
    # Explicit step list; overrides the preset when set
    sequence: Optional[List[Dict[str, Any]]] = None
    required_blink_count: int = 2
    ear_threshold: float = 0.26
    mismatch_policy: str = "hold"  # hold | reset


@dataclass
class Paths:
    data_dir: str = os.path.abspath("./data")
    db_path: str = os.path.abspath("./data/facegate.db")
    log_dir: str = os.path.abspath("./logs")


@dataclass
class AppConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    thresholds: Thresholds = field(default_factory=Thresholds)
    session: SessionConfig = field(default_factory=SessionConfig)
    challenge: ChallengeConfig = field(default_factory=ChallengeConfig)
    paths: Paths = field(default_factory=Paths)
    log_level: str = "INFO"


_SECTIONS = {
    "camera": CameraConfig,
    "backend": BackendConfig,
    "thresholds": Thresholds,
    "session": SessionConfig,
    "challenge": ChallengeConfig,
    "paths": Paths,
}


def _merge_dict(d: dict, u: dict) -> dict:
    for k, v in u.items():
        if isinstance(v, dict) and isinstance(d.get(k), dict):
            d[k] = _merge_dict(d[k], v)
        else:
            d[k] = v
    return d


def _build(cls, data: Dict[str, Any]):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def config_from_dict(data: Dict[str, Any], base: Optional[AppConfig] = None) -> AppConfig:
    merged = _merge_dict(dataclasses.asdict(base or AppConfig()), data or {})
    cfg = AppConfig()
    for name, cls in _SECTIONS.items():
        setattr(cfg, name, _build(cls, merged.get(name) or {}))
    cfg.log_level = str(merged.get("log_level", cfg.log_level))
    return cfg


def load_config(path: Optional[str] = None, ensure_dirs: bool = True) -> AppConfig:
    cfg = AppConfig()
    candidates = [path] if path else [p for p in DEFAULT_CONFIG_PATHS if p]
    for p in candidates:
        if not os.path.exists(p):
            continue
        try:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            cfg = config_from_dict(data, base=cfg)
            logger.debug("Loaded config from %s", p)
        except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
            # Keep what we had on parse errors
            logger.warning("Could not load config %s: %s", p, exc)
    if ensure_dirs:
        os.makedirs(cfg.paths.data_dir, exist_ok=True)
        os.makedirs(os.path.dirname(cfg.paths.db_path) or ".", exist_ok=True)
    return cfg
