"""
ludora_ops.reconcile.retry - 统一重试策略

对象存储的 list / copy / delete / stat 共用同一个 RetryPolicy，
由适配器构造时注入，避免各调用点各自实现退避逻辑。

退避公式: delay = min(base * 2^attempt, max) * (1 + random(-jitter, +jitter))
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import ObjectStoreTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def calculate_backoff_with_jitter(
    attempt: int, base_seconds: float, max_seconds: float, jitter_factor: float
) -> float:
    """
    计算指数退避 + jitter

    Args:
        attempt: 已失败次数（从 0 开始）
        base_seconds: 基础退避秒数
        max_seconds: 最大退避秒数
        jitter_factor: 抖动因子 (0.0 ~ 1.0)

    Returns:
        退避秒数（不小于 0）
    """
    backoff = min(base_seconds * (2**attempt), max_seconds)
    jitter = random.uniform(-jitter_factor, jitter_factor)
    return max(0.0, backoff * (1 + jitter))


def is_transient(error: BaseException) -> bool:
    return isinstance(error, ObjectStoreTransientError)


@dataclass
class RetryPolicy:
    """重试策略（最大尝试次数、基础延迟、抖动）"""

    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    jitter_factor: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            jitter_factor=config.jitter_factor,
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_factor=0.0)

    def call(
        self,
        func: Callable[[], T],
        operation: str,
        retryable: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """
        执行 func，遇到可重试错误时按退避策略重试

        重试耗尽后抛出最后一次的异常；不可重试的异常立即抛出。
        """
        retryable = retryable or is_transient
        attempt = 0
        while True:
            try:
                return func()
            except Exception as e:
                if not retryable(e) or attempt + 1 >= self.max_attempts:
                    raise
                delay = calculate_backoff_with_jitter(
                    attempt, self.base_delay_seconds, self.max_delay_seconds, self.jitter_factor
                )
                logger.warning(
                    f"{operation} 失败（第 {attempt + 1}/{self.max_attempts} 次）: {e}，{delay:.2f}s 后重试"
                )
                self.sleep(delay)
                attempt += 1
