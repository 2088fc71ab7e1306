import logging
import os


class Log(logging.LoggerAdapter):
    """Prefixes each line with the role and pid of the process that emits it.

    The same Log object is duplicated into the master and every worker by fork(),
    so the pid is read when the line is written rather than when the adapter is built."""
    def __init__(self, logger, role):
        super().__init__(logger, {})
        self.role = role

    def process(self, msg, kwargs):
        return "[{}] pid {}: {}".format(self.role, os.getpid(), msg), kwargs
