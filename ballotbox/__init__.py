"""Time-boxed voting events: credentials, ballots and live tallies."""

__version__ = '1.0.0'
