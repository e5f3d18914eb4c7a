"""Adaptive per-target rate control."""

from wow_harvester.ratelimit.controller import (
    RateController,
    RateControllerRegistry,
    RateLimiterState,
    RateSignal,
    RateStats,
    classify_response,
)

__all__ = [
    "RateController",
    "RateControllerRegistry",
    "RateLimiterState",
    "RateSignal",
    "RateStats",
    "classify_response",
]
