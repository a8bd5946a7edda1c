from flask import Blueprint, request, jsonify

from ..infra.context import get_current_user_id
from ..services.chat_service import (
    get_or_create_conversation, list_conversations, list_messages_service, send_message_service,
    edit_message_service, delete_message_service, mark_read_service, toggle_reaction_service,
    set_transcription_service, upload_voice_service
)
from .common import respond, require_user

chat_bp = Blueprint("chat_bp", __name__)


@chat_bp.get('/conversations')
@require_user
def get_conversations():
    return jsonify(list_conversations(get_current_user_id()))


@chat_bp.post('/conversations')
@require_user
def post_conversation():
    """
    POST Body: {"user_id": "<对方的用户 id>"}
    """
    payload = request.get_json(force=True) or {}
    return respond(get_or_create_conversation(get_current_user_id(), payload.get("user_id")))


@chat_bp.get('/conversations/<conversation_id>/messages')
@require_user
def get_messages(conversation_id):
    return respond(list_messages_service(get_current_user_id(), conversation_id))


@chat_bp.post('/conversations/<conversation_id>/messages')
@require_user
def post_message(conversation_id):
    payload = request.get_json(force=True) or {}
    return respond(send_message_service(
        get_current_user_id(), conversation_id,
        content=payload.get("content"),
        reply_to_id=payload.get("reply_to_id"),
        media_path=payload.get("media_path"),
        media_type=payload.get("media_type"),
    ), 201)


@chat_bp.post('/conversations/<conversation_id>/read')
@require_user
def post_read(conversation_id):
    return respond(mark_read_service(get_current_user_id(), conversation_id))


@chat_bp.put('/messages/<message_id>')
@require_user
def put_message(message_id):
    payload = request.get_json(force=True) or {}
    return respond(edit_message_service(get_current_user_id(), message_id, payload.get("content")))


@chat_bp.delete('/messages/<message_id>')
@require_user
def delete_message(message_id):
    return respond(delete_message_service(get_current_user_id(), message_id))


@chat_bp.post('/messages/<message_id>/reactions')
@require_user
def post_reaction(message_id):
    return respond(toggle_reaction_service(get_current_user_id(), message_id))


@chat_bp.put('/messages/<message_id>/transcription')
@require_user
def put_transcription(message_id):
    payload = request.get_json(force=True) or {}
    return respond(set_transcription_service(get_current_user_id(), message_id, payload.get("text")))


@chat_bp.post('/chat/voices')
@require_user
def post_voice():
    f = request.files.get("file")
    if not f:
        return jsonify({"error": "missing_fields", "fields": ["file"]}), 400
    return respond(upload_voice_service(get_current_user_id(), f.filename, f.read(), f.mimetype), 201)
