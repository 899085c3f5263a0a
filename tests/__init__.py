"""Test suite for FormBridge Intake Contract Runtime.

This package contains comprehensive tests for:
- State machine transitions (valid and invalid)
- Validation engine (missing fields, type mismatches, constraints)
- Event system (emission, serialization)
- Integration scenarios (happy path, error handling, approval flow)

Test coverage target: >85%
Minimum test cases: 80
"""
