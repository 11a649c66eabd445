"""Allow ``python -m datalake.ledger_exporter``."""

from .main import main

main()
