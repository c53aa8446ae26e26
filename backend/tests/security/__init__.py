"""
Security test suite for the SmartBooking application.

This module contains security-focused tests that validate:
- Authentication enforcement
- Authorization (IDOR prevention)
- Session and OAuth state cookie handling

These tests should be run as part of CI/CD to prevent security regressions.
"""
