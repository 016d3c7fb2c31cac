"""Base agent abstraction for statement extraction agents.

This module defines the abstract base class for agents that read a statement document the parsers
cannot handle structurally (photographs, screenshots), together with the loosely-typed result
shape such agents return. Results are normalized by the pipeline with the same locale parsers
used for tabular input.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field

from statement_importer.core.models import RawDocument


class AgentAccount(BaseModel):
    """One account as reported by an extraction agent."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    bank_name: str | None = Field(default=None, alias="bankName")
    account_number: str | None = Field(default=None, alias="accountNumber")
    account_type: str | None = Field(default=None, alias="accountType")
    initial_balance: float | str | None = Field(default=None, alias="initialBalance")
    currency: str | None = None


class AgentTransaction(BaseModel):
    """One transaction as reported by an extraction agent; values are parsed downstream."""

    model_config = ConfigDict(extra="ignore")

    date: str | None = None
    description: str | None = None
    amount: float | str | None = None
    type: str | None = None
    merchant: str | None = None


class AgentExtraction(BaseModel):
    """Everything an extraction agent read from one document."""

    model_config = ConfigDict(extra="ignore")

    accounts: list[AgentAccount] = Field(default_factory=list)
    transactions: list[AgentTransaction] = Field(default_factory=list)
    confidence: float = 0.0
    warnings: list[str] = Field(default_factory=list)


class BaseAgent(ABC):
    """Abstract base class for all statement extraction agents."""

    @abstractmethod
    def extract(self, document: RawDocument) -> AgentExtraction:
        """Read accounts and transactions from a statement document."""
