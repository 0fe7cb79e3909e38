"""Provider Fraud-Risk Scoring Pipeline.

Aggregates per-provider billing history, normalizes it against specialty
peers, trains a classifier on confirmed-fraud labels (exclusion registry and
prosecutions) and publishes a ranked, thresholded watchlist of providers who
bill like confirmed fraud cases but have not been excluded.
"""

__version__ = "2.0.0"
