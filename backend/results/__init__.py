"""
Result reconciliation for the rugby predictions backend.
Scrapes a window of results pages, attaches final scores to stored fixtures
exactly once, and re-derives prediction points for the fixtures it resolved.
"""
