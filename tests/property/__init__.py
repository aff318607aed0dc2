"""Property-based tests using Hypothesis.

These tests use generative testing to explore edge cases of URL
canonicalization with arbitrary inputs.
"""
