"""Entry point for ``python -m ledger_engine``."""

from ledger_engine.cli import main

if __name__ == "__main__":
    main()
