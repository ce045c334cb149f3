"""
Shared Kernel Module
====================

This module contains shared infrastructure used by the incident bounded
context: structured logging and HTTP middleware.

DO NOT add incident lifecycle or SLA rules to the shared kernel.
"""

__version__ = "1.0.0"
