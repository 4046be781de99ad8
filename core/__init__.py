"""
Core services: routing, ticket assignment, response tracking, alerts.

Every operation re-reads current state from the chat store and is safe
to run more than once; the staged follow-up jobs in core/pipeline.py
depend on that.
"""
