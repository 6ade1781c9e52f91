"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA bounded context: structured logging
and the HTTP middleware stack.

DO NOT add SLA business logic to the shared kernel.
"""
