"""
Convergent Test Suite

Unit tests for tasks, targets, the resolver and the executor, plus
pipeline tests that run full convergence passes against a temporary root.
"""
