"""
Shared utilities for studysource.
Configuration loading, timeout racing, bounded worker pool.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable, Iterable, List, Optional, TypeVar

import yaml

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# =============================================================================
# Configuration Loading
# =============================================================================

_config_cache: Optional[dict] = None


def resolve_env(value: Any) -> Any:
    """Replace a "${VAR}" string with the value of the environment variable."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.getenv(env_var, "")
    return value


def load_config(config_path: str = "config/master_config.yaml", force_reload: bool = False) -> dict:
    """
    Load configuration from YAML file.
    Resolves environment variables and caches result.

    Args:
        config_path: Path to config file
        force_reload: Force reload from disk

    Returns:
        Configuration dictionary
    """
    global _config_cache

    if _config_cache is not None and not force_reload:
        return _config_cache

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    for key, value in config.items():
        config[key] = resolve_env(value)

    _config_cache = config
    return config


# =============================================================================
# Timeouts
# =============================================================================

class OperationTimeout(TimeoutError):
    """Raised when a blocking call does not finish within its time limit."""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"{label} timed out after {timeout:g}s")
        self.label = label
        self.timeout = timeout


def call_with_timeout(func: Callable[..., T], timeout: float, label: str, *args, **kwargs) -> T:
    """
    Run func in a helper thread and wait at most `timeout` seconds for it.

    Exceptions raised by func propagate unchanged. On timeout OperationTimeout
    is raised and the helper thread is abandoned (Python threads cannot be
    killed); its result is discarded when it eventually finishes.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timeout")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout as e:
        future.cancel()
        raise OperationTimeout(label, timeout) from e
    finally:
        executor.shutdown(wait=False)


# =============================================================================
# Bounded Worker Pool
# =============================================================================

def run_bounded(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 4,
    thread_name_prefix: str = "worker",
) -> List[R]:
    """
    Apply func to every item using at most `max_workers` threads.
    Results are returned in input order; the first exception propagates.
    """
    items = list(items)
    if not items:
        return []

    workers = max(1, min(max_workers, len(items)))
    if workers == 1:
        return [func(item) for item in items]

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as pool:
        return list(pool.map(func, items))
