"""Market Simulation Engine.

Provides the virtual clock and event-merge loop, the trading-session state
machine, the no-lookahead price oracle and ledger-backed trade execution.
"""
