"""Inverted index from visual words to keyframes, for loop and relocalization queries."""

from __future__ import annotations

import threading
from typing import Callable, Mapping

# Candidates must share more than this fraction of the best word count.
_COMMON_WORDS_RATIO = 0.8
# Groups must reach this fraction of the best accumulated score.
_RETAIN_RATIO = 0.75
_NEIGHBOURS = 10


class KeyFrameDatabase:
    """Keyframes indexed by the visual words of their bag-of-words vectors.

    ``score(bow_a, bow_b)`` gives the similarity of two bag-of-words vectors,
    which are mappings from word id to weight.
    """

    def __init__(self, vocabulary_size: int, score: Callable[[Mapping, Mapping], float]):
        if vocabulary_size < 0:
            raise ValueError("vocabulary size must not be negative")
        self._vocabulary_size = vocabulary_size
        self._score = score
        self._inverted: list[list] = [[] for _ in range(vocabulary_size)]
        self._lock = threading.Lock()

    def _bucket(self, word: int) -> list:
        if not 0 <= word < self._vocabulary_size:
            raise IndexError(f"word {word} is outside the vocabulary")
        return self._inverted[word]

    def add(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._bucket(word).append(keyframe)

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                bucket = self._bucket(word)
                if keyframe in bucket:
                    bucket.remove(keyframe)

    def clear(self) -> None:
        with self._lock:
            self._inverted = [[] for _ in range(self._vocabulary_size)]

    def detect_loop_candidates(self, keyframe, min_score: float) -> list:
        """Keyframes not connected to ``keyframe`` that look like a revisited place."""
        connected = set(keyframe.connected_keyframes())
        sharing = []
        with self._lock:
            for word in keyframe.bow_vec:
                for kf in self._bucket(word):
                    if kf.loop_query != keyframe.id:
                        kf.loop_words = 0
                        if kf not in connected:
                            kf.loop_query = keyframe.id
                            sharing.append(kf)
                    kf.loop_words += 1

        if not sharing:
            return []

        max_common = max(kf.loop_words for kf in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored = []
        for kf in sharing:
            if kf.loop_words > min_common:
                score = self._score(keyframe.bow_vec, kf.bow_vec)
                kf.loop_score = score
                if score >= min_score:
                    scored.append((score, kf))
        if not scored:
            return []

        accumulated = []
        best_acc = min_score
        for score, kf in scored:
            best_score = score
            acc = score
            best_kf = kf
            for other in kf.best_covisibility_keyframes(_NEIGHBOURS):
                if other.loop_query == keyframe.id and other.loop_words > min_common:
                    acc += other.loop_score
                    if other.loop_score > best_score:
                        best_kf = other
                        best_score = other.loop_score
            accumulated.append((acc, best_kf))
            best_acc = max(best_acc, acc)

        return _retain(accumulated, _RETAIN_RATIO * best_acc)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes most similar to ``frame``, grouped by covisibility."""
        sharing = []
        with self._lock:
            for word in frame.bow_vec:
                for kf in self._bucket(word):
                    if kf.reloc_query != frame.id:
                        kf.reloc_words = 0
                        kf.reloc_query = frame.id
                        sharing.append(kf)
                    kf.reloc_words += 1

        if not sharing:
            return []

        max_common = max(kf.reloc_words for kf in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored = []
        for kf in sharing:
            if kf.reloc_words > min_common:
                score = self._score(frame.bow_vec, kf.bow_vec)
                kf.reloc_score = score
                scored.append((score, kf))
        if not scored:
            return []

        accumulated = []
        best_acc = 0.0
        for score, kf in scored:
            best_score = score
            acc = score
            best_kf = kf
            for other in kf.best_covisibility_keyframes(_NEIGHBOURS):
                if other.reloc_query != frame.id:
                    continue
                acc += other.reloc_score
                if other.reloc_score > best_score:
                    best_kf = other
                    best_score = other.reloc_score
            accumulated.append((acc, best_kf))
            best_acc = max(best_acc, acc)

        return _retain(accumulated, _RETAIN_RATIO * best_acc)


def _retain(accumulated, threshold: float) -> list:
    result = []
    seen = set()
    for acc, kf in accumulated:
        if acc > threshold and kf not in seen:
            result.append(kf)
            seen.add(kf)
    return result