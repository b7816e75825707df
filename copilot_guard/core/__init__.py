"""
Core modules for Copilot Guard.

This package contains session lifecycle, consent, quota accounting, content
guardrails, event cursors, retention and latency tracking.
"""
