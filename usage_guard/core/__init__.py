"""
Core modules for usage-guard.

This package contains usage derivation, threshold notifications, the plan
catalog and the refresh scheduler.
"""
