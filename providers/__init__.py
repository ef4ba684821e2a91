"""
Providers domain package.

Public API:
- Domain models: Provider, FinancialStatus
- Search configuration: SearchPolicy, default_search_policy
"""
from .models import FinancialStatus, Provider
from .policy import SearchPolicy, default_search_policy

__all__ = ["Provider",
           "FinancialStatus",
             "SearchPolicy",
               "default_search_policy",
               ]
