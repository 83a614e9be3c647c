import os
from typing import Optional

import numpy as np
import onnxruntime as ort


def resolve_model_path(filename: str, model_dir: Optional[str], env_var: str, model_path: Optional[str] = None) -> str:
    if model_path is None:
        override = os.getenv(env_var)
        if override:
            model_path = override
        else:
            base = model_dir or os.path.join(os.path.dirname(__file__), "assets")
            model_path = os.path.join(base, filename)
    if not os.path.exists(model_path):
        raise RuntimeError(f"ONNX model not found at {model_path}")
    return model_path


def create_session(model_path: str, threads: Optional[int] = None):
    sess_opts = ort.SessionOptions()
    sess_opts.intra_op_num_threads = threads or max(1, (os.cpu_count() or 2) - 1)
    available = set(ort.get_available_providers())
    providers = [p for p in ("CUDAExecutionProvider", "CPUExecutionProvider") if p in available]
    return ort.InferenceSession(model_path, sess_options=sess_opts, providers=providers or ["CPUExecutionProvider"])


def softmax(v: np.ndarray) -> np.ndarray:
    e = np.exp(v - np.max(v))
    return e / (np.sum(e) + 1e-8)
