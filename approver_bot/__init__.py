"""
Approver Bot

Keeps one authenticated browser session on a trading dashboard and, on each
external trigger, approves the pending action and verifies that it took.
"""

__version__ = "1.0.0"
