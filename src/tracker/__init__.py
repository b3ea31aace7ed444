"""Tracker module: bug reports, status workflow, board and comment threads."""

from src.tracker.board import BugBoard, group_by_status
from src.tracker.bugs import bug_sort_key, create_bug, open_bug_collection
from src.tracker.comments import CommentThread, comment_sort_key, post_comment
from src.tracker.models import Bug, BugStatus, Comment, NewBug, Priority
from src.tracker.service import TrackerService
from src.tracker.workflow import StatusWorkflow, allowed_transitions

__all__ = [
    "Bug",
    "BugBoard",
    "BugStatus",
    "Comment",
    "CommentThread",
    "NewBug",
    "Priority",
    "StatusWorkflow",
    "TrackerService",
    "allowed_transitions",
    "bug_sort_key",
    "comment_sort_key",
    "create_bug",
    "group_by_status",
    "open_bug_collection",
    "post_comment",
]
