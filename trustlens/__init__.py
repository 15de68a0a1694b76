"""
TrustLens - evidence-fusion pipeline for uploaded media artifacts.

Ingests an artifact reference, gathers evidence from independent checks
(provenance, perceptual duplicates, manipulation classifiers, web presence,
seller identity) and fuses it into a trust verdict with a confidence score.
"""

__version__ = "0.4.0"
