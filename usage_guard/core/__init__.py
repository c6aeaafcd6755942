"""
Core modules for Usage Guard.

This package contains the budget admission logic, period derivation
and cost arithmetic.
"""
