# Copyright (c) Syntropy Systems
"""
expwatch - Optimizely experiment change detection.

Re-scan sites, diff experiments, keep every version.
"""

from expwatch.detection import diff, hash_experiment, hash_set, normalize

__version__ = "0.1.0"
__all__ = ["diff", "hash_experiment", "hash_set", "normalize", "__version__"]
