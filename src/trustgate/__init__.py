"""trustgate: credential issuance and access control for the GitHub API."""

__version__ = "0.1.0"
