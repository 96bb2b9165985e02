"""일시적인 연결 장애 재시도용 지수 백오프."""

from __future__ import annotations

import random


def exponential_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> float:
    """
    지수 백오프 계산

    Args:
        attempt: 시도 횟수 (0부터 시작)
        base_delay: 기본 지연 시간 (초)
        max_delay: 최대 지연 시간 (초)
        jitter: 0.5 ~ 1.0 배 랜덤 계수 적용 여부
    """
    delay = min(base_delay * (2 ** max(attempt, 0)), max_delay)
    if jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay
