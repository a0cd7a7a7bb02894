"""Smart Money Tracker - wallet aggregation, scoring and materialization engine."""

__version__ = "0.1.0"
