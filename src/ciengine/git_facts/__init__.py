from .git import current_ref, head_sha, is_dirty, repo_root

__all__ = ["current_ref", "head_sha", "is_dirty", "repo_root"]
