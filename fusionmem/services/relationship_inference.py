"""
Automatic relationship inference between fragments.

Classification is a pluggable strategy. Inference runs on a background
worker fed through a bounded queue so fragment creation never waits on it.
"""

import queue
import threading
import uuid
from typing import Callable, Optional, Protocol, Set

from ..models.core import CreatedBy, RelationType
from ..utils.bedrock_llm import BedrockLLM
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from ..utils.text_utils import contains_marker

logger = get_logger(__name__)

CONTRAST_MARKERS = ('not', 'however', 'but')
ELABORATION_MARKERS = ('furthermore', 'additionally')
REFERENCE_MARKERS = ('see', 'refer')

EDGE_NAMESPACE = uuid.UUID('0d8b6c3e-2f4a-4c71-bb55-9e2f4f1d7a90')

_STOP = object()


def system_edge_id(owner_id: str, fragment_a_id: str, fragment_b_id: str, context: str = CreatedBy.SYSTEM.value) -> str:
    """Deterministic edge id for an unordered pair within one creation context."""
    low, high = sorted((fragment_a_id, fragment_b_id))
    return str(uuid.uuid5(EDGE_NAMESPACE, f'{owner_id}:{low}:{high}:{context}'))


class RelationClassifier(Protocol):
    created_by: CreatedBy

    def classify(self, content_a: str, content_b: str) -> RelationType:
        ...


class HeuristicRelationClassifier:
    """Keyword-marker classifier.

    Contrast markers must appear in both texts; elaboration and reference
    markers in either. Markers match whole words, case-insensitively.
    """
    created_by = CreatedBy.SYSTEM

    def classify(self, content_a: str, content_b: str) -> RelationType:
        if contains_marker(content_a, CONTRAST_MARKERS) and contains_marker(content_b, CONTRAST_MARKERS):
            return RelationType.CONTRADICTS
        if contains_marker(content_a, ELABORATION_MARKERS) or contains_marker(content_b, ELABORATION_MARKERS):
            return RelationType.BUILDS_ON
        if contains_marker(content_a, REFERENCE_MARKERS) or contains_marker(content_b, REFERENCE_MARKERS):
            return RelationType.REFERENCES
        return RelationType.SIMILAR


class LLMRelationClassifier:
    """Asks the LLM for a relation verdict; falls back to the heuristic on any failure."""
    created_by = CreatedBy.LLM

    PROMPT = """Classify how fragment B relates to fragment A.

<fragment_a>
{content_a}
</fragment_a>

<fragment_b>
{content_b}
</fragment_b>

Answer with one of: similar, contradicts, builds_on, references.
Respond in JSON: {{"relation_type": "<type>"}}"""

    def __init__(self, llm: BedrockLLM, fallback: Optional[HeuristicRelationClassifier] = None, max_chars: int = 2000):
        self.llm = llm
        self.fallback = fallback or HeuristicRelationClassifier()
        self.max_chars = max_chars

    def classify(self, content_a: str, content_b: str) -> RelationType:
        prompt = self.PROMPT.format(content_a=content_a[:self.max_chars], content_b=content_b[:self.max_chars])
        messages = [{'role': 'user', 'content': [{'text': prompt}]}, {'role': 'assistant', 'content': [{'text': '```json'}]}]
        try:
            response, _ = self.llm.generate_response(messages=messages,
                                                     system_prompt='You classify relationships between notes.',
                                                     max_tokens=50,
                                                     temperature=0.0,
                                                     stop_sequences=['```'])
            return RelationType(parse_json_object(response)['relation_type'])
        except Exception as e:
            logger.warning(f'LLM relation classification failed, using heuristic: {e}')
            return self.fallback.classify(content_a, content_b)


class RelationshipInferenceQueue:
    """Background worker that runs ``handler(owner_id, fragment_id)`` at most once per queued fragment.

    A fragment id is forgotten once the worker picks it up, so a later submission runs again.

    Handler failures are logged and dropped; they never reach the submitter.
    """

    def __init__(self, handler: Callable[[str, str], object], max_size: int = 1000, autostart: bool = True):
        self.handler = handler
        self._queue: 'queue.Queue' = queue.Queue(maxsize=max_size)
        self._submitted: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._outstanding = 0
        self._thread: Optional[threading.Thread] = None
        if autostart:
            self.start()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name='relationship-inference', daemon=True)
            self._thread.start()

    def submit(self, owner_id: str, fragment_id: str) -> bool:
        """
        Queue inference for a fragment.

        Returns:
            False if the fragment is already queued or the queue is full
        """
        with self._lock:
            if fragment_id in self._cancelled:
                # Still queued but cancelled: revive the queued entry instead of adding another
                self._cancelled.discard(fragment_id)
                logger.debug(f'Inference resumed for fragment {fragment_id}')
                return True
            if fragment_id in self._submitted:
                logger.debug(f'Inference already submitted for fragment {fragment_id}')
                return False
            self._submitted.add(fragment_id)
            self._outstanding += 1
        try:
            self._queue.put_nowait((owner_id, fragment_id))
        except queue.Full:
            logger.warning(f'Relationship inference queue full, dropping fragment {fragment_id}')
            with self._lock:
                self._submitted.discard(fragment_id)
                self._outstanding -= 1
                self._idle.notify_all()
            return False
        return True

    def cancel(self, fragment_id: str) -> bool:
        """Skip a queued fragment. Returns False if it is not waiting in the queue."""
        with self._lock:
            if fragment_id not in self._submitted:
                return False
            self._cancelled.add(fragment_id)
            return True

    def resume(self, fragment_id: str) -> bool:
        """Undo a cancel for a fragment that has not run yet."""
        with self._lock:
            if fragment_id not in self._cancelled:
                return False
            self._cancelled.discard(fragment_id)
            return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted fragment has been processed or skipped."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._outstanding

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            owner_id, fragment_id = item
            try:
                with self._lock:
                    skip = fragment_id in self._cancelled
                    self._submitted.discard(fragment_id)
                    self._cancelled.discard(fragment_id)
                if skip:
                    logger.debug(f'Inference cancelled for fragment {fragment_id}')
                else:
                    self.handler(owner_id, fragment_id)
            except Exception as e:
                logger.warning(f'Relationship inference failed for fragment {fragment_id}: {e}')
            finally:
                with self._lock:
                    self._outstanding -= 1
                    self._idle.notify_all()
