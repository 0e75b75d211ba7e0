"""
Test Suite for Task Hub

This package contains tests for:
- taskhub/ - lifecycle engine, ledgers, store, reconciler, recurrence
- taskhub/api.py - HTTP surface
- taskhub/cli.py - admin commands
"""
