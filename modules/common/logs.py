"""Plain operator log lines under the ``pumpkin`` logger."""

import logging

_logger = logging.getLogger("pumpkin")


class _HumanLog:
    def human(self, level: str, message: str, **fields):
        _logger.log(logging.getLevelName(level.upper()), message, extra=fields)


log = _HumanLog()
