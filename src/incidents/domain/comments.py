"""
Comment Store
=============

Append-only comment list of an incident with internal/external visibility.

Length limits are the caller's concern; the store only rejects empty
content. Comments are immutable values: a visibility change replaces the
comment at the same position instead of editing it.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from core import ResourceNotFoundException, ValidationException
from incidents.domain.entities import Comment, Incident


class CommentView:
    """Restartable, lazily filtered iterable over an incident's comments."""

    __slots__ = ("_comments", "_include_internal")

    def __init__(self, comments: List[Comment], include_internal: bool):
        self._comments = comments
        self._include_internal = include_internal

    def __iter__(self) -> Iterator[Comment]:
        for comment in self._comments:
            if self._include_internal or not comment.is_internal:
                yield comment

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return any(True for _ in self)


class CommentStore:
    """Adds, lists and re-flags comments on an incident."""

    def __init__(self, id_factory: Optional[Callable[[], str]] = None):
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def add(
        self,
        incident: Incident,
        author_id: str,
        content: str,
        is_internal: bool,
        now: datetime
    ) -> Comment:
        if content is None or not content.strip():
            raise ValidationException(
                "Comment content cannot be empty",
                {"field": "content"}
            )

        comment = Comment(
            id=self._id_factory(),
            incident_id=incident.id,
            author_id=author_id,
            content=content,
            created_at=now,
            is_internal=bool(is_internal),
        )
        incident.comments.append(comment)
        return comment

    def list_for(self, incident: Incident, include_internal: bool = True) -> CommentView:
        return CommentView(incident.comments, include_internal)

    def get(self, incident: Incident, comment_id: str) -> Comment:
        for comment in incident.comments:
            if comment.id == comment_id:
                return comment
        raise ResourceNotFoundException("Comment", comment_id)

    def set_visibility(self, incident: Incident, comment_id: str, is_internal: bool) -> Comment:
        """Replace the comment with a copy carrying the new visibility flag."""
        for index, comment in enumerate(incident.comments):
            if comment.id == comment_id:
                updated = replace(comment, is_internal=bool(is_internal))
                incident.comments[index] = updated
                return updated
        raise ResourceNotFoundException("Comment", comment_id)
