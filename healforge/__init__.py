"""
HealForge
=========

Self-healing CI: a bounded fix-and-retry loop for failed pipeline runs, a
local check runner, and a community pattern registry.
"""

__version__ = "0.1.0"
