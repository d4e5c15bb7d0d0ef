"""
CPQ Engine Package

A Configure-Price-Quote calculation core.
Resolves quote totals using Price → Discount → Tax → Rules pipeline with
contract overrides and an approval-gated quote workflow.
"""

__version__ = "1.0.0"
