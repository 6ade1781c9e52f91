"""
SLA Engine
==========

Multi-tenant SLA tracking and escalation service for a help-desk platform.
"""
