"""
重试工具：指数退避 + 抖动，用于账本写冲突和外部处理方的瞬时故障。
"""

import logging
import random
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class RetryConfig:
    """重试策略配置。"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[tuple] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (Exception,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """第 attempt 次失败后的等待秒数。"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


def retry_call(
    func: Callable,
    config: RetryConfig,
    *args,
    sleep: Callable[[float], Any] = time.sleep,
    **kwargs,
) -> Any:
    """
    同步调用 func，遇到可重试异常时按指数退避重试。

    不可重试的异常立即抛出；重试耗尽后抛出最后一次的异常。
    """
    name = getattr(func, "__name__", repr(func))
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error("重试次数已用尽 (%d 次): %s: %s", attempt, name, e)
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(
                "第 %d/%d 次调用 %s 失败: %s，%.2f 秒后重试",
                attempt, config.max_attempts, name, e, delay,
            )
            sleep(delay)
