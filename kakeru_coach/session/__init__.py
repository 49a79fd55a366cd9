"""
Session flows for a single logged-in learner.
"""
