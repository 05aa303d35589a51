import logging

from cashflow.cli import CashflowCLI
from cashflow.config import LOG_FORMAT, LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main():
    configure_logging()
    CashflowCLI().cmdloop()


if __name__ == "__main__":
    main()
