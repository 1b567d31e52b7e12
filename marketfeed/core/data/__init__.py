"""Data layer — cache-first, fault-tolerant access to market-data vendors.

Design: every lookup goes through a domain service (prices, exchange rates,
fundamentals) built by services.build_data_services(). A service answers
from a fresh cache entry when it can, otherwise walks primary -> fallback
provider, each behind its own circuit breaker and retry policy, and finally
falls back to the last retained cache entry marked stale.
This means:
  • A flapping vendor is skipped for reset_timeout instead of being hammered.
  • Callers always learn how fresh an answer is and where it came from.
  • Swapping a vendor is a change in services.py only.
"""
