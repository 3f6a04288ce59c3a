"""
Episode ingestion.

Encode-time classification and salience calibration for new episodes.
"""

from .episode_encoding import EpisodeClassification, classify_and_calibrate, encode_narrative

__all__ = ["EpisodeClassification", "classify_and_calibrate", "encode_narrative"]
