import logging

import structlog

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level='INFO'):
    """Route structlog output through stdlib logging at ``level``."""
    level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(format='%(message)s', level=level)
    logging.getLogger('spendsight').setLevel(level)


def get_logger(name='spendsight'):
    return structlog.get_logger(name)
