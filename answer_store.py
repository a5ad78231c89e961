# answer_store.py
# -----------------------------------------------------------------------------
# In-memory answers for one attempt, persisted one question at a time.
# - One record per question from the start (possibly empty); never deleted.
# - Transient save failures retry after a cooldown, up to max_retries per
#   (participant, question); permanent/auth failures are not retried.
# - Hydration from previously saved answers is best-effort.
# -----------------------------------------------------------------------------

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from exam_api import AUTH, TRANSIENT, classify_error, first_success, unwrap

PENDING = "pending"
SAVED = "saved"
FAILED = "failed"


class AnswerStore:
    def __init__(self, api, participant_id, question_ids: Iterable[str],
                 max_retries: int = 2, retry_cooldown: float = 2.0,
                 char_limit: int = 0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.api = api
        self.participant_id = participant_id
        self.max_retries = max(0, int(max_retries))
        self.retry_cooldown = float(retry_cooldown)
        self.char_limit = int(char_limit or 0)
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._order: List[str] = []
        self._records: Dict[str, Dict[str, Any]] = {}
        for qid in question_ids:
            qid = str(qid)
            if qid in self._records:
                continue
            self._order.append(qid)
            self._records[qid] = {"text": "", "state": PENDING, "saved_at": None, "error": None}
        self.retries: Dict[Tuple[Any, str], int] = {}

    # ---------------------------------------------------------------- access
    def _record(self, question_id) -> Dict[str, Any]:
        rec = self._records.get(str(question_id))
        if rec is None:
            raise KeyError(f"question {question_id} is not part of this exam")
        return rec

    def set_answer(self, question_id, text: Optional[str]) -> Dict[str, Any]:
        text = str(text or "")
        if self.char_limit > 0:
            text = text[:self.char_limit]
        with self._lock:
            rec = self._record(question_id)
            if rec["text"] != text or rec["state"] != SAVED:
                rec["text"] = text
                rec["state"] = PENDING
                rec["error"] = None
            return dict(rec)

    def get(self, question_id) -> Dict[str, Any]:
        with self._lock:
            return dict(self._record(question_id))

    def text(self, question_id) -> str:
        return self.get(question_id)["text"]

    def answers(self) -> Dict[str, str]:
        with self._lock:
            return {qid: self._records[qid]["text"] for qid in self._order}

    def records(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {qid: dict(self._records[qid]) for qid in self._order}

    def question_ids(self) -> List[str]:
        return list(self._order)

    # ------------------------------------------------------------------ save
    def save(self, question_id, max_retries: Optional[int] = None) -> Dict[str, Any]:
        """
        Persist one answer. Returns {"ok", "state", "attempts", "error", "error_kind"}.
        Never raises for upstream failures; the record carries the outcome.
        """
        qid = str(question_id)
        self._record(qid)
        key = (self.participant_id, qid)
        budget = self.max_retries if max_retries is None else max(0, int(max_retries))
        attempts = 0
        while True:
            attempts += 1
            text = self.text(qid)
            try:
                self.api.submit_answer(self.participant_id, qid, text)
            except Exception as e:
                kind = classify_error(e)
                used = self.retries.get(key, 0)
                if kind == TRANSIENT and used < budget:
                    self.retries[key] = used + 1
                    print(f"[answers] save {qid} failed ({e}); retry {used + 1}/{budget} "
                          f"in {self.retry_cooldown:g}s")
                    self._sleep(self.retry_cooldown)
                    continue
                if kind == TRANSIENT:
                    print(f"[answers] save {qid} failed after {attempts} attempt(s): {e}")
                else:
                    print(f"[answers] save {qid} rejected ({kind}), not retrying: {e}")
                with self._lock:
                    rec = self._records[qid]
                    if rec["text"] == text:
                        rec["state"] = FAILED
                        rec["error"] = str(e)
                return {"ok": False, "state": FAILED, "attempts": attempts,
                        "error": str(e), "error_kind": kind}

            self.retries[key] = 0
            with self._lock:
                rec = self._records[qid]
                if rec["text"] == text:
                    rec["state"] = SAVED
                    rec["saved_at"] = self._clock()
                    rec["error"] = None
                state = rec["state"]
            return {"ok": True, "state": state, "attempts": attempts, "error": None, "error_kind": None}

    # --------------------------------------------------------------- hydrate
    def load_existing(self) -> Dict[str, str]:
        """Fill records from answers saved earlier in this attempt; on any failure leave them as-is."""
        pid = self.participant_id
        try:
            label, payload = first_success([
                ("answers", lambda: self.api.get_answers(pid)),
                ("answers-alt", lambda: self.api.get_answers_alt(pid)),
            ], tag="answers")
        except Exception as e:
            if classify_error(e) == AUTH:
                print(f"[answers] hydration refused for {pid}: {e}")
            else:
                print(f"[answers] hydration for {pid} failed, starting empty: {e}")
            return {}

        data = unwrap(payload)
        items = data.get("answers") if isinstance(data, dict) else data
        if not isinstance(items, list):
            print(f"[answers] hydration for {pid} via {label} returned no answer list, starting empty")
            return {}
        loaded: Dict[str, str] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            qid = item.get("questionId", item.get("QuestionID"))
            text = item.get("answer", item.get("Answer"))
            if qid is None or not text:
                continue
            qid = str(qid)
            with self._lock:
                rec = self._records.get(qid)
                if rec is None:
                    continue
                rec["text"] = str(text)
                rec["state"] = SAVED
                rec["saved_at"] = self._clock()
            loaded[qid] = str(text)
        if loaded:
            print(f"[answers] restored {len(loaded)} answer(s) for {pid} via {label}")
        return loaded
