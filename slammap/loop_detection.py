"""Loop detection: covisibility-consistent candidates and similarity estimation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from slammap.geometry import Sim3

_MIN_BOW_MATCHES = 20
_MIN_OPTIMIZED_INLIERS = 20
_MIN_TOTAL_MATCHES = 40
_RANSAC_ITERATIONS_PER_ROUND = 5


@dataclass
class LoopClosingHooks:
    """Matching, RANSAC and optimisation steps supplied from outside.

    ``search_by_bow(keyframe1, keyframe2)`` returns, for every feature of
    ``keyframe1``, the matched map point of ``keyframe2`` or None.
    ``make_sim3_solver(keyframe1, keyframe2, matches, fix_scale, probability=...,
    min_inliers=..., max_iterations=...)`` returns a solver whose
    ``iterate(n)`` gives ``(transform_or_None, no_more, inlier_flags)``.
    ``search_by_sim3(keyframe1, keyframe2, matches, transform, threshold)``
    returns the matches extended by guided search.
    ``optimize_sim3(keyframe1, keyframe2, matches, transform, th2, fix_scale)``
    returns ``(n_inliers, optimized_transform, matches)``.
    ``search_by_projection(keyframe, scw, points, matches, threshold)`` returns
    the matches extended by projecting ``points`` with the 4x4 matrix ``scw``.
    ``search_by_sim3`` and ``search_by_projection`` may be None to skip them.
    """

    search_by_bow: Callable[[Any, Any], list[Any]] | None = None
    make_sim3_solver: Callable[..., Any] | None = None
    search_by_sim3: Callable[[Any, Any, list[Any], Sim3, float], list[Any]] | None = None
    optimize_sim3: Callable[..., tuple[int, Sim3, list[Any]]] | None = None
    search_by_projection: Callable[[Any, np.ndarray, list[Any], list[Any], float], list[Any]] | None = None


@dataclass(frozen=True)
class ConsistentGroup:
    """Keyframes around a loop candidate and how many queries in a row saw them."""

    keyframes: frozenset
    consistency: int


class LoopDetector:
    """Finds loop candidates for keyframes and computes the closing similarity.

    The database must provide ``add(keyframe)`` and
    ``detect_loop_candidates(keyframe, min_score)``; the vocabulary must provide
    ``score(bow_a, bow_b)``.
    """

    def __init__(self, keyframe_db, vocabulary, hooks: LoopClosingHooks | None = None,
                 fix_scale: bool = True, covisibility_consistency_th: int = 3) -> None:
        self._keyframe_db = keyframe_db
        self._vocabulary = vocabulary
        self._hooks = hooks or LoopClosingHooks()
        self.fix_scale = bool(fix_scale)
        self.covisibility_consistency_th = covisibility_consistency_th

        self.last_loop_kf_id = 0
        self.consistent_groups: list[ConsistentGroup] = []
        self.enough_consistent_candidates: list[Any] = []

        self.current_keyframe = None
        self.matched_keyframe = None
        self.scw: Sim3 | None = None
        self.current_matched_points: list[Any] = []
        self.loop_map_points: list[Any] = []

    @property
    def scw_matrix(self) -> np.ndarray | None:
        """The loop similarity as a homogeneous 4x4 matrix."""
        return None if self.scw is None else self.scw.to_matrix()

    def detect_loop(self, keyframe) -> bool:
        """Whether `keyframe` closes a loop consistently seen over several keyframes."""
        self.current_keyframe = keyframe
        keyframe.set_not_erase()

        if keyframe.id < self.last_loop_kf_id + 10:
            self._keyframe_db.add(keyframe)
            keyframe.set_erase()
            return False

        min_score = 1.0
        for neighbour in keyframe.covisible_keyframes():
            if neighbour.is_bad():
                continue
            score = self._vocabulary.score(keyframe.bow_vec, neighbour.bow_vec)
            if score < min_score:
                min_score = score

        candidates = self._keyframe_db.detect_loop_candidates(keyframe, min_score)
        if not candidates:
            self._keyframe_db.add(keyframe)
            self.consistent_groups = []
            keyframe.set_erase()
            return False

        self.enough_consistent_candidates = []
        current_groups: list[ConsistentGroup] = []
        group_taken = [False] * len(self.consistent_groups)

        for candidate in candidates:
            group = frozenset(set(candidate.connected_keyframes()) | {candidate})
            enough = False
            consistent_for_some = False
            for index, previous in enumerate(self.consistent_groups):
                if group.isdisjoint(previous.keyframes):
                    continue
                consistent_for_some = True
                consistency = previous.consistency + 1
                if not group_taken[index]:
                    current_groups.append(ConsistentGroup(group, consistency))
                    group_taken[index] = True
                if consistency >= self.covisibility_consistency_th and not enough:
                    self.enough_consistent_candidates.append(candidate)
                    enough = True
            if not consistent_for_some:
                current_groups.append(ConsistentGroup(group, 0))

        self.consistent_groups = current_groups
        self._keyframe_db.add(keyframe)

        if not self.enough_consistent_candidates:
            keyframe.set_erase()
            return False
        return True

    def compute_sim3(self, keyframe) -> bool:
        """Estimate the similarity from `keyframe` to one of the consistent candidates."""
        hooks = self._hooks
        if hooks.search_by_bow is None or hooks.make_sim3_solver is None or hooks.optimize_sim3 is None:
            raise ValueError("search_by_bow, make_sim3_solver and optimize_sim3 hooks are required")
        self.current_keyframe = keyframe
        candidates = list(self.enough_consistent_candidates)

        solvers: list[Any] = [None] * len(candidates)
        matches_per_candidate: list[list[Any]] = [[] for _ in candidates]
        discarded = [False] * len(candidates)
        remaining = 0

        for i, candidate in enumerate(candidates):
            candidate.set_not_erase()
            if candidate.is_bad():
                discarded[i] = True
                continue
            matches = list(hooks.search_by_bow(keyframe, candidate))
            matches_per_candidate[i] = matches
            if sum(1 for m in matches if m is not None) < _MIN_BOW_MATCHES:
                discarded[i] = True
                continue
            solvers[i] = hooks.make_sim3_solver(
                keyframe, candidate, matches, self.fix_scale,
                probability=0.99, min_inliers=20, max_iterations=300,
            )
            remaining += 1

        matched = False
        while remaining > 0 and not matched:
            for i, candidate in enumerate(candidates):
                if discarded[i]:
                    continue
                transform, no_more, inliers = solvers[i].iterate(_RANSAC_ITERATIONS_PER_ROUND)
                if no_more:
                    discarded[i] = True
                    remaining -= 1
                if transform is None:
                    continue

                original = matches_per_candidate[i]
                matches: list[Any] = [None] * len(original)
                for j, is_inlier in enumerate(inliers):
                    if is_inlier:
                        matches[j] = original[j]
                if hooks.search_by_sim3 is not None:
                    matches = list(hooks.search_by_sim3(keyframe, candidate, matches, transform, 7.5))

                n_inliers, gscm, matches = hooks.optimize_sim3(
                    keyframe, candidate, matches, transform, 10, self.fix_scale
                )
                if n_inliers >= _MIN_OPTIMIZED_INLIERS:
                    matched = True
                    self.matched_keyframe = candidate
                    self.scw = gscm @ Sim3.from_pose(candidate.pose())
                    self.current_matched_points = list(matches)
                    break

        if not matched:
            for candidate in candidates:
                candidate.set_erase()
            keyframe.set_erase()
            return False

        loop_keyframes = self.matched_keyframe.covisible_keyframes()
        loop_keyframes.append(self.matched_keyframe)
        self.loop_map_points = []
        for loop_keyframe in loop_keyframes:
            for point in loop_keyframe.map_point_matches():
                if point is None or point.is_bad() or point.loop_point_for_kf == keyframe.id:
                    continue
                self.loop_map_points.append(point)
                point.loop_point_for_kf = keyframe.id

        if hooks.search_by_projection is not None:
            self.current_matched_points = list(hooks.search_by_projection(
                keyframe, self.scw.to_matrix(), self.loop_map_points,
                self.current_matched_points, 10,
            ))

        total = sum(1 for m in self.current_matched_points if m is not None)
        if total >= _MIN_TOTAL_MATCHES:
            for candidate in candidates:
                if candidate is not self.matched_keyframe:
                    candidate.set_erase()
            return True

        for candidate in candidates:
            candidate.set_erase()
        keyframe.set_erase()
        return False

    def reset(self) -> None:
        """Forget when the last loop was closed."""
        self.last_loop_kf_id = 0