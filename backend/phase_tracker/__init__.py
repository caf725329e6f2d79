"""
Phase tracker backend: combat action planning and movement budgets.
"""
