"""
.. include:: ../../README.md
"""
__all__ = ["core"]
__docformat__ = "markdown"
import os
from tracegrad import core
import numpy as np

np.set_printoptions(precision=5, threshold=1000, edgeitems=5, linewidth=120)
TRACEGRAD_BACKEND = os.environ.get("TRACEGRAD_BACKEND", "numpy")
core.set_backend(TRACEGRAD_BACKEND)


def __getattr__(attr):
    if attr in vars(core):
        core.dblog(f"Looking tracegrad.{attr} in core", enable=core.backend.LOG_BACKEND)
        return getattr(core, attr)
    elif attr in vars(core.backend.operator_set):
        core.dblog(
            f"Looking tracegrad.{attr} in core.backend.operator_set",
            enable=core.backend.LOG_BACKEND,
        )
        return getattr(core.backend.operator_set, attr)
    elif attr in core.dtypes.name_dtype_map.keys():
        return core.dtypes.name_dtype_map[attr]

    raise AttributeError(f"module tracegrad has no attribute {attr}")
