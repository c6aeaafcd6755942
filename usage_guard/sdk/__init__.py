"""
SDK for Usage Guard.

Provides budget-checked access to metered LLM APIs.
"""

from .openai_client import BudgetExceeded, GuardedOpenAI

__all__ = ["BudgetExceeded", "GuardedOpenAI"]
