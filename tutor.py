# tutor.py
# -----------------------------------------------------------------------------
# AI tutor for practice questions (JSON).
# - Gemini generateContent by default; OpenAI chat completions when AI_PROVIDER=openai
# - Never reveals the answer unless the student explicitly asks
# - Tip / summary requests use fixed instructions; priming never calls a model
# - Chat history saved best-effort
# -----------------------------------------------------------------------------

import json
import os
from typing import Any, Dict, List, Optional, Tuple

import requests
from flask import Blueprint, request, jsonify, g

from exam_models import QuestionRecord, resolve_correct_value
from exam_store import ExamStore

PRIMING_MESSAGE = "Assistant context primed."
TIP_MESSAGE = "Can I get a tip for this question?"
SUMMARY_MESSAGE = "Can you summarise the text for me?"
DEFAULT_MESSAGE = "Can you help me with this question?"


class TutorUnavailable(RuntimeError):
    pass


def _zero_usage() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def build_tutor_prompt(q: QuestionRecord, tip: bool = False, summarise: bool = False) -> str:
    correct = resolve_correct_value(q)
    prompt = (
        "You are a friendly and helpful SAT tutor AI. A student is working on a practice "
        "question and has a question or needs a tip.\n"
        "The current question is:\n"
        f"Text: \"{q.text or 'No question text provided'}\"\n"
        f"Options: {json.dumps(list(q.options) or ['No options provided'], ensure_ascii=False)}\n"
        f"The correct answer is: \"{correct if correct is not None else 'Unknown'}\". "
        "Do NOT reveal the correct answer unless the student explicitly asks for it or is "
        "clearly very stuck and asking for direct help.\n"
        "Focus on conceptual understanding and problem-solving strategies."
    )
    if tip:
        prompt += ("\nThe student has requested a tip for this question. Give one concise, "
                   "actionable tip without giving away the answer.")
    elif summarise:
        prompt += ("\nThe student has requested a summary of the question text. Summarise the "
                   "main ideas and important details of the passage. Do not mention the answer options.")
    return prompt


def _normalize_history(history: Any) -> List[Dict[str, str]]:
    """[{role, content}] with roles folded to user/assistant; accepts Gemini-style parts."""
    out: List[Dict[str, str]] = []
    for item in history if isinstance(history, list) else []:
        if not isinstance(item, dict):
            continue
        role = "assistant" if item.get("role") in ("assistant", "model") else "user"
        content = item.get("content")
        if not content and isinstance(item.get("parts"), list) and item["parts"]:
            content = (item["parts"][0] or {}).get("text")
        if content:
            out.append({"role": role, "content": str(content)})
    return out


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_tutor_blueprint(base_path: str, deps: Dict[str, Any], name: str = "tutor") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/api".
    Required deps: fetch_one, fetch_all, execute  (or a ready-made "store")
    """
    url_prefix = (base_path or "") + "/api"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    store = deps.get("store") or ExamStore(deps)

    # ---- Config --------------------------------------------------------------
    AI_PROVIDER        = (os.getenv("AI_PROVIDER") or "gemini").strip().lower()
    GEMINI_API_KEY     = (os.getenv("GEMINI_API_KEY") or "").strip()
    GEMINI_MODEL       = (os.getenv("GEMINI_MODEL") or "gemini-1.5-flash").strip()
    OPENAI_API_KEY     = (os.getenv("OPENAI_API_KEY") or "").strip()
    OPENAI_TUTOR_MODEL = (os.getenv("OPENAI_TUTOR_MODEL") or "gpt-4o-mini").strip()
    MAX_OUTPUT_TOKENS  = int(os.getenv("ASSISTANT_MAX_TOKENS") or 1000)

    # ------------------------------- provider calls ---------------------------
    def _gemini_generate(system: str, history: List[Dict[str, str]], message: str) -> Tuple[str, Dict[str, int]]:
        if not GEMINI_API_KEY:
            raise TutorUnavailable("GEMINI_API_KEY is not set.")
        contents = [{"role": "model" if h["role"] == "assistant" else "user",
                     "parts": [{"text": h["content"]}]} for h in history]
        contents.append({"role": "user", "parts": [{"text": message}]})
        r = requests.post(
            f"https://generativelanguage.googleapis.com/v1beta/models/{GEMINI_MODEL}:generateContent",
            params={"key": GEMINI_API_KEY},
            headers={"Content-Type": "application/json"},
            json={
                "systemInstruction": {"parts": [{"text": system}]},
                "contents": contents,
                "generationConfig": {"maxOutputTokens": MAX_OUTPUT_TOKENS, "temperature": 0.4},
            },
            timeout=60,
        )
        r.raise_for_status()
        data = r.json()
        parts = (((data.get("candidates") or [{}])[0].get("content") or {}).get("parts")) or []
        text = "".join(p.get("text") or "" for p in parts).strip()
        meta = data.get("usageMetadata") or {}
        usage = {
            "prompt_tokens": int(meta.get("promptTokenCount") or 0),
            "completion_tokens": int(meta.get("candidatesTokenCount") or 0),
            "total_tokens": int(meta.get("totalTokenCount") or 0),
        }
        return text, usage

    def _openai_chat(system: str, history: List[Dict[str, str]], message: str) -> Tuple[str, Dict[str, int]]:
        if not OPENAI_API_KEY:
            raise TutorUnavailable("OPENAI_API_KEY is not set.")
        messages = [{"role": "system", "content": system}] + history + [{"role": "user", "content": message}]
        r = requests.post(
            "https://api.openai.com/v1/chat/completions",
            headers={"Authorization": f"Bearer {OPENAI_API_KEY}", "Content-Type": "application/json"},
            json={
                "model": OPENAI_TUTOR_MODEL,
                "messages": messages,
                "temperature": 0.4,
                "max_tokens": MAX_OUTPUT_TOKENS,
            },
            timeout=60,
        )
        r.raise_for_status()
        data = r.json()
        text = (data["choices"][0]["message"]["content"] or "").strip()
        u = data.get("usage") or {}
        usage = {k: int(u.get(k) or 0) for k in ("prompt_tokens", "completion_tokens", "total_tokens")}
        return text, usage

    # ------------------------------- helpers ----------------------------------
    def _resolve_question(data: Dict[str, Any]) -> Optional[QuestionRecord]:
        qid = data.get("questionId")
        if qid:
            try:
                q = store.load_question(str(qid))
                if q is not None:
                    return q
            except Exception as e:
                print(f"[tutor] question lookup failed for {qid}: {e}")
        body_q = data.get("question")
        if isinstance(body_q, dict) and body_q.get("text"):
            return QuestionRecord.from_doc(body_q, fallback_id=str(qid or ""))
        return None

    def _save_chat(quiz_id: Optional[str], question_id: str, role: str, content: str):
        try:
            store.save_chat_message(g.user_id, quiz_id, question_id, role, content)
        except Exception as e:
            print(f"[tutor] saving chat history failed (continuing): {e}")

    # ------------------------------- route ------------------------------------
    @bp.post("/assistant")
    def assistant():
        if not getattr(g, "user_id", None):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({"ok": False, "error": "JSON object expected"}), 400

        tip = bool(data.get("tipRequested"))
        summarise = bool(data.get("summariseRequested"))
        priming = bool(data.get("priming"))
        history = _normalize_history(data.get("history"))

        message = data.get("message")
        if not message and isinstance(data.get("question"), str):
            message = data["question"]
        if not message and history and history[-1]["role"] == "user":
            message = history.pop()["content"]

        if priming:
            return jsonify({"ok": True, "message": PRIMING_MESSAGE, "usage": _zero_usage()})
        if not (tip or summarise or message):
            return jsonify({"ok": False, "error": "message is required"}), 400

        q = _resolve_question(data)
        if q is None:
            return jsonify({"ok": False, "error": "question not found"}), 404

        if tip:
            message = TIP_MESSAGE
        elif summarise:
            message = SUMMARY_MESSAGE
        message = str(message or DEFAULT_MESSAGE)
        system = build_tutor_prompt(q, tip=tip, summarise=summarise)

        try:
            if AI_PROVIDER == "openai":
                reply, usage = _openai_chat(system, history, message)
            else:
                reply, usage = _gemini_generate(system, history, message)
        except TutorUnavailable as e:
            print(f"[tutor] provider unavailable: {e}")
            return jsonify({"ok": False, "error": "assistant is not configured"}), 503
        except Exception as e:
            print(f"[tutor] {AI_PROVIDER} call failed: {e}")
            return jsonify({"ok": False, "error": "Sorry, the assistant could not be reached."}), 502

        quiz_id = data.get("quizId")
        _save_chat(quiz_id, q.id, "user", message)
        _save_chat(quiz_id, q.id, "assistant", reply)
        return jsonify({"ok": True, "message": reply, "usage": usage})

    return bp
