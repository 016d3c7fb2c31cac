"""Parsers package: pure pipeline stages that turn raw statement bytes into candidate accounts."""

from .classifier import FormatClassifier  # noqa: F401
from .locale import parse_amount, parse_date  # noqa: F401
