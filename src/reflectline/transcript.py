from reflectline.session import CallSession


def to_plain_text(answers: list) -> str:
    """Render answers as alternating "Prompt:" / "Answer:" lines."""
    if not answers:
        return ""

    lines = []
    for answer in answers:
        lines.append(f"Prompt: {answer.prompt_text}")
        lines.append(f"Answer: {answer.text}")
    return "\n".join(lines)


def to_json_array(answers: list, include_ratings: bool = False) -> list[dict]:
    """Answers as the journal's response list.

    Rating answers are left out unless ``include_ratings``; the journal
    carries the rating as a number instead.
    """
    if not answers:
        return []

    return [
        {
            "position": a.position,
            "prompt_id": a.prompt_id,
            "prompt_text": a.prompt_text,
            "response_text": a.text,
        }
        for a in answers
        if include_ratings or not a.is_rating
    ]


def to_timestamped_dump(session: CallSession) -> dict:
    """Build a transcript dump dict for structured logging.

    Answer times are relative seconds from the start of the call.
    """
    base_time = session.created_at
    entries = [
        {
            "t": round(a.finished_at - base_time, 1),
            "position": a.position,
            "prompt": a.prompt_text,
            "answer": a.text,
            "rating_prompt": a.is_rating,
        }
        for a in session.answers
    ]
    return {
        "call_sid": session.call_sid,
        "conversation_id": session.conversation_id,
        "owner": session.owner,
        "final_status": session.status.value,
        "error": session.error,
        "entries": entries,
    }
