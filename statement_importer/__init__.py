"""Statement Importer: turns bank statement files into candidate accounts and transactions for review."""

__version__ = "1.0.0"
