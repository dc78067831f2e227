"""ralph-loop: a coding agent in a loop with a review and verification done-gate."""

__version__ = "1.0.0"
