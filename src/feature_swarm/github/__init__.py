"""GitHub issue and git branch collaborators."""

from .client import GhCliFacade, IssueRef, IssueSummary, IssueVcsFacade, parse_github_repo

__all__ = ["GhCliFacade", "IssueRef", "IssueSummary", "IssueVcsFacade", "parse_github_repo"]
