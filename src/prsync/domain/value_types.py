from __future__ import annotations
from typing import NewType, Literal

RepoName    = NewType("RepoName", str)   # "owner/name", lowercase
PRState     = Literal["open", "closed", "merged"]
ReviewState = Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED"]
CommentKind = Literal["issue_comment", "review_comment"]
