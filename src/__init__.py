"""
Episodic rule consolidation core.

Classifies code-review incident narratives into a closed pattern taxonomy,
calibrates their salience, and turns untrusted consolidation candidates into
validated patterns, rules, contradictions and salience updates.
"""
