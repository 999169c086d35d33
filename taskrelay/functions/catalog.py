"""Functions registered at process start."""
from __future__ import annotations

from typing import Tuple

from taskrelay.functions.helper import math_utils, string_utils
from taskrelay.functions.registry import FunctionFactory
from taskrelay.functions.runner import timer
from taskrelay.functions.worker import sentiment

BUILTIN_FUNCTIONS: Tuple[FunctionFactory, ...] = (
    math_utils.create,
    string_utils.create,
    timer.create,
    sentiment.create,
)
