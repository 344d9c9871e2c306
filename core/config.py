# ==================================================
# ================  MODULE: config  ================
# ==================================================
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import joblib
import numpy as np
import yaml

from utils.logger import configure_loggers

__all__ = [
    "GlobalConfig",
    "ScanOptions",
    "SeparableOptions",
    "FullOptions",
    "get_global_config",
    "set_global_config",
]


def _update(config: Any, kwargs: Dict[str, Any]) -> Any:
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise AttributeError(f"[{type(config).__name__}] Unknown config key: '{key}'")
    return config


def _print_summary(title: str, info: Dict[str, Any]) -> None:
    print(f"=== [ {title} Summary ] ===")
    for k in info:
        print(f"{k:<28}: {info[k]}")


# ==================================================
# ===============  CLASS: GlobalConfig  ============
# ==================================================
@dataclass
class GlobalConfig:
    """
    Process-wide settings of the image engine.

    Attributes
    ----------
    n_jobs : int, default -1
        Worker threads used by the processing frameworks (-1 means all cores).
    backend : str, default "threading"
        joblib backend for line dispatch ("threading" or "sequential").
    min_operations_per_thread : int, default 1000
        Jobs estimated below twice this amount run on the calling thread only.
    max_size : int
        Largest extent accepted for a single image dimension.
    default_data_type : str, default "sfloat"
        Sample type used when an image is created without an explicit type.
    log_dir : str or None
        Directory for rotating log files; console-only logging when None.
    log_level : str, default "WARNING"
        Level of the engine's main logger.
    verbose : bool, default False
        Print configuration summaries when settings are loaded.
    """

    n_jobs: int = -1
    backend: str = "threading"
    min_operations_per_thread: int = 1000
    max_size: int = int(np.iinfo(np.intp).max)
    default_data_type: str = "sfloat"
    log_dir: Optional[str] = None
    log_level: str = "WARNING"
    verbose: bool = False

    def update_config(self, **kwargs) -> "GlobalConfig":
        """Dynamically update configuration attributes (in-place)."""
        _update(self, kwargs)
        self.validate()
        return self

    def validate(self) -> None:
        if self.backend not in ("threading", "sequential"):
            raise ValueError(f"[GlobalConfig] Unsupported backend '{self.backend}'.")
        if self.n_jobs == 0:
            raise ValueError("[GlobalConfig] n_jobs must be non-zero.")
        if self.max_size < 1:
            raise ValueError("[GlobalConfig] max_size must be positive.")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ValueError(f"[GlobalConfig] Unknown log level '{self.log_level}'.")

    @property
    def level(self) -> int:
        return logging.getLevelName(str(self.log_level).upper())

    def max_threads(self) -> int:
        """Number of worker threads a framework may use."""
        if self.backend == "sequential":
            return 1
        if self.n_jobs < 0:
            return max(1, joblib.cpu_count() + 1 + self.n_jobs)
        return self.n_jobs

    # ====[ YAML persistence ]====
    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GlobalConfig":
        """Load settings from a YAML mapping; unknown keys raise AttributeError."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"[GlobalConfig] Expected a mapping in '{path}'.")
        config = cls().update_config(**data)
        if config.verbose:
            config.summary()
        return config

    def to_yaml(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(asdict(self), f, sort_keys=False)

    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print a summary of the global configuration."""
        info = asdict(self)
        info["max_threads"] = self.max_threads()
        if printout:
            _print_summary("GlobalConfig", info)
        return info


_GLOBAL_CONFIG = GlobalConfig()
_GLOBAL_LOCK = threading.Lock()


def get_global_config() -> GlobalConfig:
    return _GLOBAL_CONFIG


def set_global_config(config: Optional[GlobalConfig] = None, **kwargs) -> GlobalConfig:
    """
    Replace the process-wide configuration, or update fields of the current one.

    Examples
    --------
    >>> set_global_config(n_jobs=1).n_jobs
    1
    """
    global _GLOBAL_CONFIG
    with _GLOBAL_LOCK:
        if config is not None:
            config.validate()
            _GLOBAL_CONFIG = config
        if kwargs:
            _GLOBAL_CONFIG.update_config(**kwargs)
        if config is not None or {"log_dir", "log_level"} & set(kwargs):
            configure_loggers(_GLOBAL_CONFIG.log_dir, _GLOBAL_CONFIG.level)
        return _GLOBAL_CONFIG


# ==================================================
# ===========  CLASSES: framework options  =========
# ==================================================
class _Options:
    """Shared helpers of the framework option dataclasses."""

    def update_config(self, **kwargs):
        """Dynamically update option flags (in-place)."""
        return _update(self, kwargs)

    @classmethod
    def from_flags(cls, *flags: str):
        """Build options with the named flags switched on, e.g. `ScanOptions.from_flags("not_in_place")`."""
        return cls().update_config(**{name: True for name in flags})

    def enabled(self) -> list:
        return [f.name for f in fields(self) if getattr(self, f.name)]

    def summary(self, printout: bool = True) -> Dict[str, bool]:
        info = asdict(self)
        if printout:
            _print_summary(type(self).__name__, info)
        return info


@dataclass
class ScanOptions(_Options):
    """
    Flags of the scan framework.

    Attributes
    ----------
    no_multithreading : bool
        Always run on the calling thread.
    need_coordinates : bool
        Line parameters carry the coordinates of the first pixel of the line.
    tensor_as_spatial_dim : bool
        Treat tensor elements as an extra spatial dimension (filter sees scalars).
    expand_tensor_in_buffer : bool
        Input buffers hold the full column-major matrix for packed tensor shapes.
    no_singleton_expansion : bool
        Inputs must already have the same sizes.
    not_in_place : bool
        Outputs may not share memory with inputs.
    """

    no_multithreading: bool = False
    need_coordinates: bool = False
    tensor_as_spatial_dim: bool = False
    expand_tensor_in_buffer: bool = False
    no_singleton_expansion: bool = False
    not_in_place: bool = False


@dataclass
class SeparableOptions(_Options):
    """
    Flags of the separable framework.

    Attributes
    ----------
    as_scalar_image : bool
        Process each tensor element as a separate scalar image.
    expand_tensor_in_buffer : bool
        Buffers hold the full column-major matrix for packed tensor shapes.
    dont_resize_output : bool
        Keep the sizes of a forged output; the filter resamples between lengths.
    use_input_buffer : bool
        Always copy input lines into a buffer.
    use_output_buffer : bool
        Always write through an output buffer.
    no_multithreading : bool
        Always run on the calling thread.
    read_input_every_pass : bool
        Every pass reads the original input instead of the previous pass's output.
    """

    as_scalar_image: bool = False
    expand_tensor_in_buffer: bool = False
    dont_resize_output: bool = False
    use_input_buffer: bool = False
    use_output_buffer: bool = False
    no_multithreading: bool = False
    read_input_every_pass: bool = False


@dataclass
class FullOptions(_Options):
    """Flags of the full (neighborhood) framework."""

    as_scalar_image: bool = False
    expand_tensor_in_buffer: bool = False
    no_multithreading: bool = False
    border_already_expanded: bool = False
