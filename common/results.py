"""
Result containers shared by the reference pipeline and the accelerated dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import numpy as np

from common.geometry import Channel


@dataclass
class ChannelStatistics:
    average_histogram: np.ndarray
    variance_histogram: np.ndarray
    average: Optional[np.ndarray] = None  # None when per-block detail was not requested
    variance: Optional[np.ndarray] = None


FrameStatistics = Dict[Channel, ChannelStatistics]


class ErrorCode(Enum):
    OK = "OK"
    NOT_PREPARED = "NOT_PREPARED"
    NO_INPUT = "NO_INPUT"
    DEVICE_ERROR = "DEVICE_ERROR"


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    error_code: ErrorCode = ErrorCode.OK
    message: str = ""
    elapsed_ms: float = 0.0

    def __bool__(self) -> bool:
        return self.ok
