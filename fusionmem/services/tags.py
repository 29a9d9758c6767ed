"""
Hierarchical tag service.
"""

import uuid
from typing import Any, Dict, List, Optional

from ..models.core import Tag
from ..utils.config import config
from ..utils.errors import NotFoundError, ValidationError, require_owner
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

MAX_TAG_NAME_LENGTH = 100


class TagService:
    """Owner-scoped tag tree with materialised paths."""

    def __init__(self, neptune: Optional[NeptuneClient] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)

    def create_tag(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> Tag:
        """
        Create a tag, optionally under a parent.

        Raises:
            ValidationError: If the name is empty, contains '/', or already exists under the same parent
            NotFoundError: If the parent does not exist for this owner
        """
        owner_id = require_owner(owner_id)
        name = (name or '').strip()
        if not name:
            raise ValidationError('Tag name must not be empty')
        if '/' in name or len(name) > MAX_TAG_NAME_LENGTH:
            raise ValidationError(f"Tag name must be at most {MAX_TAG_NAME_LENGTH} characters and must not contain '/'")

        path = name
        if parent_id:
            parent = self.neptune.get_tag(parent_id, owner_id)
            if parent is None:
                raise NotFoundError(f'Parent tag {parent_id} not found')
            path = f'{parent.path}/{name}'

        siblings = [t for t in self.neptune.list_tags(owner_id) if t.parent_id == parent_id]
        if any(t.name.lower() == name.lower() for t in siblings):
            raise ValidationError(f"Tag '{name}' already exists at this level")

        tag = Tag(id=str(uuid.uuid4()), owner_id=owner_id, name=name, path=path, parent_id=parent_id, created_at=utc_now())
        self.neptune.create_tag(tag)
        logger.info(f'Created tag {path} for owner {owner_id}')
        return tag

    def get_tag(self, owner_id: str, tag_id: str) -> Tag:
        owner_id = require_owner(owner_id)
        tag = self.neptune.get_tag(tag_id, owner_id)
        if tag is None:
            raise NotFoundError(f'Tag {tag_id} not found')
        return tag

    def list_tags(self, owner_id: str, parent_id: Optional[str] = None, search: Optional[str] = None) -> List[Tag]:
        owner_id = require_owner(owner_id)
        tags = self.neptune.list_tags(owner_id)
        if parent_id is not None:
            tags = [t for t in tags if t.parent_id == parent_id]
        if search:
            needle = search.lower()
            tags = [t for t in tags if needle in t.name.lower()]
        return tags

    def get_tag_tree(self, owner_id: str) -> List[Dict[str, Any]]:
        """Nested ``{'tag': Tag, 'children': [...]}`` nodes, siblings ordered by name."""
        owner_id = require_owner(owner_id)
        tags = self.neptune.list_tags(owner_id)
        children: Dict[Optional[str], List[Tag]] = {}
        for tag in tags:
            children.setdefault(tag.parent_id, []).append(tag)

        def build(parent_id: Optional[str]) -> List[Dict[str, Any]]:
            return [{'tag': tag, 'children': build(tag.id)} for tag in sorted(children.get(parent_id, []), key=lambda t: t.name)]

        return build(None)

    def validate_tag_ids(self, owner_id: str, tag_ids: List[str]) -> List[str]:
        """
        Raises:
            NotFoundError: If any tag id is unknown for this owner
        """
        known = {t.id for t in self.neptune.list_tags(owner_id)}
        missing = [tag_id for tag_id in tag_ids if tag_id not in known]
        if missing:
            raise NotFoundError(f'Unknown tag ids: {missing}')
        return sorted(set(tag_ids))
