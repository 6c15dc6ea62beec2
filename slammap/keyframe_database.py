"""Inverted-file index of keyframes for loop and relocalisation queries."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any


def _retain_best(scored: list[tuple[float, Any]], best_score: float) -> list[Any]:
    """Keyframes scoring above 75% of the best, each listed once, in order."""
    threshold = 0.75 * best_score
    seen: set[int] = set()
    result = []
    for score, keyframe in scored:
        if score > threshold and id(keyframe) not in seen:
            seen.add(id(keyframe))
            result.append(keyframe)
    return result


class KeyFrameDatabase:
    """Index from vocabulary words to the keyframes containing them.

    The vocabulary must provide ``score(bow_a, bow_b)``; bag-of-words vectors are
    mappings from word id to weight.
    """

    def __init__(self, vocabulary) -> None:
        self._vocabulary = vocabulary
        self._inverted_file: defaultdict[int, list[Any]] = defaultdict(list)
        self._lock = threading.Lock()

    def add(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted_file[word].append(keyframe)

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted_file.get(word)
                if not entries:
                    continue
                for position, candidate in enumerate(entries):
                    if candidate is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted_file.clear()

    def _sharing(self, bow_vec):
        for word in sorted(bow_vec):
            yield from self._inverted_file.get(word, ())

    def _accumulate(self, scored, query_id, query_attr, score_attr, min_common, best):
        accumulated = []
        for score, candidate in scored:
            best_score = score
            total = score
            best_kf = candidate
            for neighbour in candidate.best_covisibility_keyframes(10):
                if getattr(neighbour, query_attr) != query_id:
                    continue
                if min_common is not None and neighbour.loop_words <= min_common:
                    continue
                neighbour_score = getattr(neighbour, score_attr)
                total += neighbour_score
                if neighbour_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour_score
            accumulated.append((total, best_kf))
            if total > best:
                best = total
        return _retain_best(accumulated, best)

    def detect_loop_candidates(self, keyframe, min_score) -> list[Any]:
        """Keyframes not connected to `keyframe` that look like a revisit."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []
        with self._lock:
            for candidate in self._sharing(keyframe.bow_vec):
                if candidate.loop_query != keyframe.id:
                    candidate.loop_words = 0
                    if candidate not in connected:
                        candidate.loop_query = keyframe.id
                        sharing.append(candidate)
                candidate.loop_words += 1
        if not sharing:
            return []

        min_common = int(max(c.loop_words for c in sharing) * 0.8)
        scored = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))
        if not scored:
            return []

        return self._accumulate(
            scored, keyframe.id, "loop_query", "loop_score", min_common, min_score
        )

    def detect_relocalization_candidates(self, frame) -> list[Any]:
        """Keyframes that resemble `frame` enough to attempt relocalisation."""
        sharing: list[Any] = []
        with self._lock:
            for candidate in self._sharing(frame.bow_vec):
                if candidate.reloc_query != frame.id:
                    candidate.reloc_words = 0
                    candidate.reloc_query = frame.id
                    sharing.append(candidate)
                candidate.reloc_words += 1
        if not sharing:
            return []

        min_common = int(max(c.reloc_words for c in sharing) * 0.8)
        scored = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))
        if not scored:
            return []

        return self._accumulate(
            scored, frame.id, "reloc_query", "reloc_score", None, 0.0
        )