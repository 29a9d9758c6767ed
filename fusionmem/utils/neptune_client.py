"""
Amazon Neptune graph store for fragments, hierarchical tags and relationship
edges, using the Gremlin Python driver with AWS SigV4 authentication.

Graph layout:
    (Fragment) -[RELATES_TO]-> (Fragment)
    (Fragment) -[TAGGED]-> (Tag)
    (Tag) -[CHILD_OF]-> (Tag)
Every vertex and edge carries ``owner_id`` and every traversal filters on it.
"""

import json
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Set

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from ..models.core import CreatedBy, Fragment, RelationType, RelationshipEdge, SourceType, Tag
from .config import NeptuneConfig
from .errors import UpstreamUnavailableError
from .logging_config import get_logger
from .timestamp_utils import to_datetime, to_iso

logger = get_logger(__name__)

FRAGMENT_LABEL = 'Fragment'
TAG_LABEL = 'Tag'
RELATION_LABEL = 'RELATES_TO'
TAGGED_LABEL = 'TAGGED'
CHILD_OF_LABEL = 'CHILD_OF'


class NeptuneError(UpstreamUnavailableError):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def _vertex_to_fragment(data: Dict[Any, Any], tag_ids: Optional[List[str]] = None) -> Fragment:
    return Fragment(id=_first(data, 'id'),
                    owner_id=_first(data, 'owner_id'),
                    content=_first(data, 'content', ''),
                    source_type=SourceType(_first(data, 'source_type', SourceType.MANUAL.value)),
                    created_at=to_datetime(_first(data, 'created_at')),
                    updated_at=to_datetime(_first(data, 'updated_at')),
                    title=_first(data, 'title'),
                    source_id=_first(data, 'source_id'),
                    container_tags=json.loads(_first(data, 'container_tags', '[]')),
                    tag_ids=sorted(tag_ids or []),
                    metadata=json.loads(_first(data, 'metadata', '{}')),
                    deleted_at=to_datetime(_first(data, 'deleted_at')))


def _vertex_to_tag(data: Dict[Any, Any]) -> Tag:
    return Tag(id=_first(data, 'id'),
               owner_id=_first(data, 'owner_id'),
               name=_first(data, 'name'),
               path=_first(data, 'path'),
               parent_id=_first(data, 'parent_id'),
               created_at=to_datetime(_first(data, 'created_at')))


def _edge_to_relation(props: Dict[Any, Any], out_id: str, in_id: str) -> RelationshipEdge:
    return RelationshipEdge(id=_first(props, 'id'),
                            owner_id=_first(props, 'owner_id'),
                            fragment_a_id=out_id,
                            fragment_b_id=in_id,
                            relation_type=RelationType(_first(props, 'relation_type')),
                            strength=float(_first(props, 'strength', 0.0)),
                            confidence=float(_first(props, 'confidence', 0.0)),
                            created_by=CreatedBy(_first(props, 'created_by', CreatedBy.USER.value)),
                            created_at=to_datetime(_first(props, 'created_at')),
                            metadata=json.loads(_first(props, 'metadata', '{}')))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, traversal_source: Any = None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            traversal_source: Pre-built traversal source; skips connecting when given
        """
        self.config = config
        self.connection = None
        self.g = traversal_source
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    def _fragment_v(self, fragment_id: str, owner_id: str):
        return self.g.V().has_label(FRAGMENT_LABEL).has('id', fragment_id).has('owner_id', owner_id)

    def _tag_ids_of(self, fragment_id: str, owner_id: str) -> List[str]:
        return self._fragment_v(fragment_id, owner_id).out(TAGGED_LABEL).has('owner_id', owner_id).values('id').to_list()

    # Fragments

    @retry_on_connection_error
    def create_fragment(self, fragment: Fragment) -> bool:
        """
        Create a fragment vertex. Re-creating an existing id is a no-op.

        Returns:
            True when the vertex exists after the call
        """
        if self.g.V().has_label(FRAGMENT_LABEL).has('id', fragment.id).has_next():
            logger.debug(f'Fragment vertex already exists: {fragment.id}')
            return True

        t = self.g.add_v(FRAGMENT_LABEL).property(Cardinality.single, 'id', fragment.id)
        for key, value in self._fragment_properties(fragment).items():
            t = t.property(Cardinality.single, key, value)
        t.next()

        if fragment.tag_ids:
            self._attach_tags(fragment.id, fragment.owner_id, fragment.tag_ids)

        logger.debug(f'Created fragment vertex: {fragment.id}')
        return True

    @staticmethod
    def _fragment_properties(fragment: Fragment) -> Dict[str, Any]:
        props = {
            'owner_id': fragment.owner_id,
            'content': fragment.content,
            'source_type': fragment.source_type.value,
            'container_tags': json.dumps(sorted(set(fragment.container_tags))),
            'metadata': json.dumps(fragment.metadata, default=str),
            'created_at': to_iso(fragment.created_at),
            'updated_at': to_iso(fragment.updated_at),
        }
        if fragment.title:
            props['title'] = fragment.title
        if fragment.source_id:
            props['source_id'] = fragment.source_id
        return props

    @retry_on_connection_error
    def get_fragment(self, fragment_id: str, owner_id: str) -> Optional[Fragment]:
        rows = self._fragment_v(fragment_id, owner_id).value_map().to_list()
        if not rows:
            return None
        return _vertex_to_fragment(rows[0], self._tag_ids_of(fragment_id, owner_id))

    @retry_on_connection_error
    def get_fragments(self, fragment_ids: Iterable[str], owner_id: str) -> Dict[str, Fragment]:
        fragment_ids = list(fragment_ids)
        if not fragment_ids:
            return {}
        rows = self.g.V().has_label(FRAGMENT_LABEL).has('owner_id', owner_id).has('id', P.within(fragment_ids))\
            .project('props', 'tags')\
            .by(__.value_map())\
            .by(__.out(TAGGED_LABEL).has('owner_id', owner_id).values('id').fold())\
            .to_list()
        fragments = [_vertex_to_fragment(row['props'], row['tags']) for row in rows]
        return {f.id: f for f in fragments}

    @retry_on_connection_error
    def list_fragments(self, owner_id: str) -> List[Fragment]:
        """All fragments of an owner, soft-deleted ones included, newest first."""
        rows = self.g.V().has_label(FRAGMENT_LABEL).has('owner_id', owner_id)\
            .project('props', 'tags')\
            .by(__.value_map())\
            .by(__.out(TAGGED_LABEL).has('owner_id', owner_id).values('id').fold())\
            .to_list()
        fragments = [_vertex_to_fragment(row['props'], row['tags']) for row in rows]
        return sorted(fragments, key=lambda f: (f.created_at, f.id), reverse=True)

    @retry_on_connection_error
    def update_fragment(self, fragment: Fragment) -> bool:
        t = self._fragment_v(fragment.id, fragment.owner_id)
        for key, value in self._fragment_properties(fragment).items():
            t = t.property(Cardinality.single, key, value)
        if not t.to_list():
            return False
        self._set_tags(fragment.id, fragment.owner_id, fragment.tag_ids)
        return True

    @retry_on_connection_error
    def set_fragment_deleted(self, fragment_id: str, owner_id: str, deleted_at: Optional[str]) -> bool:
        if not self._fragment_v(fragment_id, owner_id).has_next():
            return False
        if deleted_at:
            self._fragment_v(fragment_id, owner_id).property(Cardinality.single, 'deleted_at', deleted_at).iterate()
        else:
            self._fragment_v(fragment_id, owner_id).properties('deleted_at').drop().iterate()
        return True

    @retry_on_connection_error
    def delete_fragment(self, fragment_id: str, owner_id: str) -> bool:
        """
        Drop a fragment vertex together with its RELATES_TO and TAGGED edges.

        Returns:
            True if the vertex existed
        """
        if not self._fragment_v(fragment_id, owner_id).has_next():
            return False
        self._fragment_v(fragment_id, owner_id).both_e().drop().iterate()
        self._fragment_v(fragment_id, owner_id).drop().iterate()
        logger.debug(f'Deleted fragment and connected edges: {fragment_id}')
        return True

    # Tags

    def _attach_tags(self, fragment_id: str, owner_id: str, tag_ids: Iterable[str]) -> None:
        for tag_id in tag_ids:
            self._fragment_v(fragment_id, owner_id).as_('f')\
                .V().has_label(TAG_LABEL).has('id', tag_id).has('owner_id', owner_id)\
                .coalesce(__.in_e(TAGGED_LABEL).where(__.out_v().as_('f')),
                          __.add_e(TAGGED_LABEL).from_('f').property('owner_id', owner_id))\
                .iterate()

    def _set_tags(self, fragment_id: str, owner_id: str, tag_ids: Iterable[str]) -> None:
        self._fragment_v(fragment_id, owner_id).out_e(TAGGED_LABEL).drop().iterate()
        self._attach_tags(fragment_id, owner_id, tag_ids)

    @retry_on_connection_error
    def attach_tags(self, fragment_id: str, owner_id: str, tag_ids: Iterable[str]) -> List[str]:
        self._attach_tags(fragment_id, owner_id, tag_ids)
        return sorted(self._tag_ids_of(fragment_id, owner_id))

    @retry_on_connection_error
    def create_tag(self, tag: Tag) -> bool:
        t = self.g.add_v(TAG_LABEL)\
            .property(Cardinality.single, 'id', tag.id)\
            .property(Cardinality.single, 'owner_id', tag.owner_id)\
            .property(Cardinality.single, 'name', tag.name)\
            .property(Cardinality.single, 'path', tag.path)\
            .property(Cardinality.single, 'created_at', to_iso(tag.created_at))
        if tag.parent_id:
            t = t.property(Cardinality.single, 'parent_id', tag.parent_id)
        t.next()

        if tag.parent_id:
            self.g.V().has_label(TAG_LABEL).has('id', tag.id).as_('child')\
                .V().has_label(TAG_LABEL).has('id', tag.parent_id).has('owner_id', tag.owner_id)\
                .add_e(CHILD_OF_LABEL).from_('child').property('owner_id', tag.owner_id)\
                .iterate()
        logger.debug(f'Created tag vertex: {tag.path}')
        return True

    @retry_on_connection_error
    def get_tag(self, tag_id: str, owner_id: str) -> Optional[Tag]:
        rows = self.g.V().has_label(TAG_LABEL).has('id', tag_id).has('owner_id', owner_id).value_map().to_list()
        return _vertex_to_tag(rows[0]) if rows else None

    @retry_on_connection_error
    def list_tags(self, owner_id: str) -> List[Tag]:
        rows = self.g.V().has_label(TAG_LABEL).has('owner_id', owner_id).value_map().to_list()
        return sorted((_vertex_to_tag(row) for row in rows), key=lambda t: t.path)

    # Relationship edges

    @retry_on_connection_error
    def create_relation(self, edge: RelationshipEdge) -> bool:
        """
        Create a RELATES_TO edge from fragment_a to fragment_b.

        Re-creating an existing edge id is a no-op, so retries are safe.

        Returns:
            True if the edge exists after the call, False if an endpoint is missing
        """
        if self.g.E().has_label(RELATION_LABEL).has('id', edge.id).has_next():
            return True

        created = self._fragment_v(edge.fragment_a_id, edge.owner_id).as_('a')\
            .V().has_label(FRAGMENT_LABEL).has('id', edge.fragment_b_id).has('owner_id', edge.owner_id)\
            .add_e(RELATION_LABEL).from_('a')\
            .property('id', edge.id)\
            .property('owner_id', edge.owner_id)\
            .property('relation_type', edge.relation_type.value)\
            .property('strength', float(edge.strength))\
            .property('confidence', float(edge.confidence))\
            .property('created_by', edge.created_by.value)\
            .property('created_at', to_iso(edge.created_at))\
            .property('metadata', json.dumps(edge.metadata, default=str))\
            .to_list()
        if created:
            logger.debug(f'Created relation edge: {edge.id}')
        return bool(created)

    @retry_on_connection_error
    def relation_exists(self, owner_id: str, fragment_a_id: str, fragment_b_id: str) -> bool:
        """True if any RELATES_TO edge joins the two fragments, in either direction."""
        return self._fragment_v(fragment_a_id, owner_id)\
            .both_e(RELATION_LABEL).has('owner_id', owner_id)\
            .where(__.other_v().has('id', fragment_b_id))\
            .has_next()

    @retry_on_connection_error
    def get_relations(self, fragment_id: str, owner_id: str, limit: int = 50) -> List[RelationshipEdge]:
        rows = self._fragment_v(fragment_id, owner_id)\
            .both_e(RELATION_LABEL).has('owner_id', owner_id)\
            .limit(limit)\
            .project('props', 'out', 'in')\
            .by(__.value_map())\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .to_list()
        edges = [_edge_to_relation(row['props'], row['out'], row['in']) for row in rows]
        return sorted(edges, key=lambda e: (-e.strength, e.id))

    @retry_on_connection_error
    def neighbour_ids(self, fragment_ids: Iterable[str], owner_id: str) -> Set[str]:
        """Ids of fragments one RELATES_TO hop away from any of ``fragment_ids``."""
        fragment_ids = list(fragment_ids)
        if not fragment_ids:
            return set()
        return set(self.g.V().has_label(FRAGMENT_LABEL).has('owner_id', owner_id).has('id', P.within(fragment_ids))\
            .both_e(RELATION_LABEL).has('owner_id', owner_id)\
            .other_v().has('owner_id', owner_id)\
            .values('id').dedup().to_list())

    @retry_on_connection_error
    def cleanup(self) -> bool:
        """
        Clean up all data from Neptune (vertices and edges).

        Returns:
            True if cleanup was successful, False otherwise
        """
        logger.info('Deleting all edges from Neptune...')
        self.g.E().drop().iterate()
        logger.info('Deleting all vertices from Neptune...')
        self.g.V().drop().iterate()
        return True

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        self.g.V().limit(1).count().next()
        return True
