# opsledger End-to-End Test Suite
#
# This package contains:
# - API tests against a live server (pytest + httpx)
# - Stress/load tests (Locust)
#
# Run with: python -m tests.run [smoke|full|api|stress]
