"""
Infrastructure Layer
=====================

Low-level technical concerns shared across the application (logging setup).
"""
