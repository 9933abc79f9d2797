"""
Kernel - Property-Based Testing Suite

Property-based testing using Hypothesis to discover edge cases and invariants
in dependency ordering, container lifetimes and event delivery.
"""
