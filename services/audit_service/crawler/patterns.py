from typing import Iterable

import regex

from config.logging_config import get_logger

logger = get_logger(__name__)


class PatternMatcher:
    """User-supplied URL regexes, searched with a per-match time limit.

    A search that exceeds the limit returns ``on_timeout`` so callers can
    fail closed.
    """

    def __init__(self, patterns: Iterable[str], timeout_s: float, max_length: int):
        self.timeout_s = timeout_s
        self._compiled = []
        for p in patterns:
            if len(p) > max_length:
                raise ValueError(f"pattern longer than {max_length} characters")
            self._compiled.append(regex.compile(p))

    def __bool__(self) -> bool:
        return bool(self._compiled)

    def __len__(self) -> int:
        return len(self._compiled)

    def matches_any(self, url: str, on_timeout: bool) -> bool:
        for compiled in self._compiled:
            try:
                if compiled.search(url, timeout=self.timeout_s):
                    return True
            except TimeoutError:
                logger.warning(
                    f"URL pattern timed out: {compiled.pattern}",
                    extra={"url": url, "pattern": compiled.pattern},
                )
                return on_timeout
        return False
