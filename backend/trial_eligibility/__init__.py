"""
Clinical trial eligibility engine.

Matches a patient's answered questionnaire slots against the criteria of
every trial in a trial database and sorts trials into eligible, ineligible
and needs-review buckets.
"""

__version__ = "0.1.0"
