"""Working-tree diff statistics pushed by the git-status collaborator."""

from typing import List

from pydantic import Field

from .messages import WireModel


class GitFileStat(WireModel):
    path: str
    insertions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)
    binary: bool = False
    untracked: bool = False
    staged: bool = False


class GitDiffStat(WireModel):
    """Per-file line counts plus totals."""

    files: List[GitFileStat] = Field(default_factory=list)
    total_insertions: int = Field(0, ge=0)
    total_deletions: int = Field(0, ge=0)

    @classmethod
    def from_files(cls, files: List[GitFileStat]) -> "GitDiffStat":
        return cls(
            files=files,
            total_insertions=sum(f.insertions for f in files),
            total_deletions=sum(f.deletions for f in files),
        )
