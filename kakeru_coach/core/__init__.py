"""
Core modules for Kakeru Coach.

This package contains the pure budget, rate-limit and submission
guardrail logic shared by every session flow.
"""
