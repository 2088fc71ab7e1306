import logging
import numbers

DEFAULTS = {
    "concurrency": 5,
    "logger": None,
    "polling_interval": 0.01,
    "tmp_dir": None,
}


class Config():
    """Options for a ForkPool, merged over DEFAULTS.

    Recognized options:
    concurrency - maximum number of worker processes running at once (int >= 1)
    logger - the logging.Logger that receives the pool's log lines
    polling_interval - seconds the master waits between reaping passes while workers run
    tmp_dir - parent directory for the per-master result transport (system default if None)"""
    def __init__(self, options=None):
        if options is None:
            options = {}
        unknown = set(options) - set(DEFAULTS)
        if unknown:
            raise ValueError("Unknown option(s): {}".format(", ".join(sorted(unknown))))

        self._options = dict(DEFAULTS)
        self._options.update(options)

        self._check_concurrency(self._options["concurrency"])
        self._check_polling_interval(self._options["polling_interval"])
        if self._options["logger"] is None:
            self._options["logger"] = logging.getLogger("forkpool")
        elif not isinstance(self._options["logger"], logging.Logger):
            raise TypeError("The logger option must be a logging.Logger")

    @property
    def concurrency(self) -> int:
        """Maximum number of concurrently running workers. Read-only."""
        return self._options["concurrency"]

    @property
    def logger(self) -> logging.Logger:
        """The log sink. Read-only."""
        return self._options["logger"]

    @property
    def polling_interval(self) -> float:
        """Seconds between the master's reaping passes. Read-only."""
        return self._options["polling_interval"]

    @property
    def tmp_dir(self):
        """Parent directory of the result transport, or None for the system default. Read-only."""
        return self._options["tmp_dir"]

    @staticmethod
    def _check_concurrency(value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("concurrency must be an integer")
        if value < 1:
            raise ValueError("concurrency must be at least 1")

    @staticmethod
    def _check_polling_interval(value):
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise TypeError("polling_interval must be a number")
        if value <= 0:
            raise ValueError("polling_interval must be positive")
