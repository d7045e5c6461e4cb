"""Common utilities shared by the outlier remover, the solver wrapper and the CLI.

This package hosts modules that are independent of the decision logic
(structured decision logging, loop-closure classification metrics, plotting).
"""
