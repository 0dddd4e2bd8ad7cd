import logging

from procureflow.config import settings

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    # Engine echo stays off unless asked for explicitly.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
