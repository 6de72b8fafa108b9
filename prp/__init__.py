"""
Prp - Pull request parser for the repositories you care about.

A CLI tool that:
1. Tracks open pull requests across configured GitHub repositories
2. Enriches each with approvals, build status, labels and rebase state
3. Rebases your own pull requests locally and force-pushes them to your fork

Usage:
    prp init-config         # Create an empty configuration file
    prp profile add NAME    # Add a profile with a GitHub token
    prp repo add OWNER NAME # Track a repository
    prp parse               # Show open pull requests
    prp auto-rebase         # Rebase your pull requests that are behind
"""

__version__ = "0.1.0"
__author__ = "Prp"
