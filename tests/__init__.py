"""
Test suite for the episodic rule consolidation core.

All tests are unit tests: the candidate generator is always mocked, so no
network or model access is needed.

Test markers:
    - unit: Fast unit tests
    - slow: Tests taking >1 second

Run tests:
    pytest                    # All tests
    pytest -m "not slow"      # Skip slow tests
    pytest tests/test_consolidation_sanitizer.py
"""
