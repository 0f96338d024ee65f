"""Shared test fixtures package.

Provides reusable helpers for all test suites: an in-memory provider and
small builders for declarations and snapshot records.
"""
