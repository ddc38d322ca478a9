"""
JAX Configuration - MUST be imported before any other kmbayes module touches JAX.

This module sets environment variables and runtime flags for JAX:
- Double precision (kernel matrices and Cholesky factors need float64)
- Persistent compilation cache directory
- Quieter XLA C++ logging
"""
import os
from pathlib import Path

# --- PRECISION ---
# Env var covers the case where JAX has not been imported yet;
# the config update below covers the case where it already has.
os.environ.setdefault("JAX_ENABLE_X64", "1")

# Suppress CUDA/XLA C++ warnings (GPU interconnect, NUMA, cuDNN factories)
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

# --- PERSISTENT COMPILATION CACHE ---
# Iteration kernels are recompiled for every new data shape; caching makes
# repeated fits on the same design cheap.
_JAX_CACHE_DIR = Path.home() / ".cache" / "jax" / "kmbayes_cache"
_JAX_CACHE_DIR.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("JAX_COMPILATION_CACHE_DIR", str(_JAX_CACHE_DIR))
os.environ.setdefault("JAX_PERSISTENT_CACHE_MIN_COMPILE_TIME_SECS", "1.0")

import jax  # noqa: E402

jax.config.update("jax_enable_x64", True)
