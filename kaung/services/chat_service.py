from typing import Dict, Any, List, Optional
import logging
import time

from sqlalchemy import or_, and_
from sqlalchemy.exc import SQLAlchemyError

from ..domain.policy import authorize
from ..infra.models import db, Conversation, Message, MessageReaction
from ..infra.repository import new_id, get_profile, get_message, load_actor, profile_names
from .storage_service import (
    upload_file, file_exists, create_signed_url, refresh_signed_url, StorageError, BUCKET_CHAT_VOICES
)

logger = logging.getLogger('log')

MEDIA_TYPES = {"image", "voice"}
LOVE = "love"


def _conversation_for(user_id: str, conversation_id: str):
    """
    :return: (conversation, error)
    """
    conv = db.session.get(Conversation, conversation_id) if conversation_id else None
    if not conv:
        return None, {"error": "not_found", "message": "会话不存在"}
    decision = authorize(load_actor(user_id), "message.read", {"participants": conv.participants()})
    if not decision:
        return None, {"error": "forbidden", "reason": decision.reason}
    return conv, None


def get_or_create_conversation(user_a: str, user_b: str) -> Dict[str, Any]:
    if not user_a or not user_b:
        return {"error": "missing_fields"}
    if user_a == user_b:
        return {"error": "forbidden", "reason": "cannot_chat_with_self"}
    if not get_profile(user_b):
        return {"error": "not_found", "message": "用户不存在"}

    conv = Conversation.query.filter(or_(
        and_(Conversation.participant1_id == user_a, Conversation.participant2_id == user_b),
        and_(Conversation.participant1_id == user_b, Conversation.participant2_id == user_a),
    )).first()
    if conv:
        return {"ok": True, "conversation": conv.to_dict(), "created": False}

    now = int(time.time())
    conv = Conversation(id=new_id(), participant1_id=user_a, participant2_id=user_b, created_at=now, updated_at=now)
    db.session.add(conv)
    db.session.commit()
    logger.info("conversation created id=%s %s <-> %s", conv.id, user_a, user_b)
    return {"ok": True, "conversation": conv.to_dict(), "created": True}


def list_conversations(user_id: str) -> List[Dict[str, Any]]:
    convs = (
        Conversation.query.filter(or_(
            Conversation.participant1_id == user_id,
            Conversation.participant2_id == user_id,
        ))
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .all()
    )
    others = {c.id: (c.participants() - {user_id} or {user_id}).pop() for c in convs}
    names = profile_names(others.values())
    res = []
    for c in convs:
        d = c.to_dict()
        d["other_user_id"] = others[c.id]
        d["other_user_name"] = names.get(others[c.id], "")
        d["unread_count"] = Message.query.filter(
            Message.conversation_id == c.id,
            Message.sender_id != user_id,
            Message.read_at.is_(None),
            Message.is_deleted.is_(False),
        ).count()
        res.append(d)
    return res


def upload_voice_service(user_id: str, filename: str, data: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """
    上传语音消息，返回存储路径和临时链接
    """
    try:
        path = upload_file(BUCKET_CHAT_VOICES, user_id, filename or "voice.webm", data, content_type or "audio/webm")
        url = create_signed_url(BUCKET_CHAT_VOICES, path)
    except StorageError as e:
        return {"error": "upload_failed", "message": str(e)}
    return {"ok": True, "path": path, "url": url}


def send_message_service(sender_id: str, conversation_id: str, content: Optional[str] = None,
                         reply_to_id: Optional[str] = None, media_path: Optional[str] = None,
                         media_type: Optional[str] = None) -> Dict[str, Any]:
    """
    发送消息
    - 只有会话参与者可以发送，受限账号不能发送
    - 回复的消息必须属于同一个会话
    - 文字和附件至少有一个
    """
    conv, err = _conversation_for(sender_id, conversation_id)
    if err:
        return err
    decision = authorize(load_actor(sender_id), "chat.send")
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    content = (content or "").strip()
    if media_path:
        if media_type not in MEDIA_TYPES:
            return {"error": "invalid_media_type"}
        try:
            if media_type == "voice" and not file_exists(BUCKET_CHAT_VOICES, media_path):
                return {"error": "not_found", "message": "语音文件不存在"}
        except StorageError as e:
            return {"error": "upload_failed", "message": str(e)}
    elif not content:
        return {"error": "missing_fields", "message": "消息不能为空"}

    if reply_to_id:
        target = get_message(reply_to_id)
        if not target or target.conversation_id != conv.id:
            return {"error": "not_found", "message": "回复的消息不存在"}
        reply_to_id = target.id

    now = int(time.time())
    msg = Message(
        conversation_id=conv.id,
        sender_id=sender_id,
        content=content,
        media_url=media_path or None,
        media_type=media_type if media_path else None,
        reply_to_id=reply_to_id or None,
        is_deleted=False,
        created_at=now,
    )
    try:
        db.session.add(msg)
        conv.updated_at = now
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("send message failed conv=%s", conversation_id)
        return {"error": "send_failed"}
    logger.info("message sent id=%s conv=%s", msg.id, conv.id)
    return {"ok": True, "message": msg.to_dict()}


def _own_message(user_id: str, message_id: str, action: str):
    msg = get_message(message_id)
    if not msg:
        return None, {"error": "not_found"}
    decision = authorize(load_actor(user_id), action, msg.to_dict())
    if not decision:
        return None, {"error": "forbidden", "reason": decision.reason}
    return msg, None


def edit_message_service(user_id: str, message_id: str, content: Optional[str]) -> Dict[str, Any]:
    content = (content or "").strip()
    if not content:
        return {"error": "missing_fields", "message": "消息不能为空"}
    msg, err = _own_message(user_id, message_id, "message.edit")
    if err:
        return err
    msg.content = content
    msg.edited_at = int(time.time())
    db.session.commit()
    return {"ok": True, "message": msg.to_dict()}


def delete_message_service(user_id: str, message_id: str) -> Dict[str, Any]:
    """
    软删除：保留行，内容对外显示为空
    """
    msg, err = _own_message(user_id, message_id, "message.delete")
    if err:
        return err
    msg.is_deleted = True
    db.session.commit()
    logger.info("message deleted id=%s by %s", message_id, user_id)
    return {"ok": True, "message": msg.to_dict()}


def mark_read_service(user_id: str, conversation_id: str) -> Dict[str, Any]:
    """
    对方发来的未读消息全部标记为已读
    """
    conv, err = _conversation_for(user_id, conversation_id)
    if err:
        return err
    now = int(time.time())
    count = Message.query.filter(
        Message.conversation_id == conv.id,
        Message.sender_id != user_id,
        Message.read_at.is_(None),
    ).update({Message.read_at: now}, synchronize_session="evaluate")
    db.session.commit()
    return {"ok": True, "marked": count}


def toggle_reaction_service(user_id: str, message_id: str) -> Dict[str, Any]:
    """
    点赞（love）/ 取消点赞
    """
    msg = get_message(message_id)
    if not msg:
        return {"error": "not_found"}
    _, err = _conversation_for(user_id, msg.conversation_id)
    if err:
        return err

    existing = MessageReaction.query.filter_by(message_id=msg.id, user_id=user_id).first()
    if existing:
        db.session.delete(existing)
        reacted = False
    else:
        db.session.add(MessageReaction(
            message_id=msg.id, user_id=user_id, reaction_type=LOVE, created_at=int(time.time())
        ))
        reacted = True
    db.session.commit()
    return {"ok": True, "reacted": reacted}


def set_transcription_service(user_id: str, message_id: str, text: Optional[str]) -> Dict[str, Any]:
    msg = get_message(message_id)
    if not msg or msg.media_type != "voice":
        return {"error": "not_found"}
    _, err = _conversation_for(user_id, msg.conversation_id)
    if err:
        return err
    msg.transcription = (text or "").strip() or None
    db.session.commit()
    return {"ok": True, "message": msg.to_dict()}


def list_messages_service(user_id: str, conversation_id: str) -> Dict[str, Any]:
    """
    会话消息（时间正序），附带回复预览、点赞和语音临时链接
    """
    conv, err = _conversation_for(user_id, conversation_id)
    if err:
        return err
    msgs = (
        Message.query.filter_by(conversation_id=conv.id)
        .order_by(Message.created_at, Message.id)
        .all()
    )
    by_id = {m.id: m for m in msgs}
    reactions: Dict[str, List[Dict[str, Any]]] = {}
    if msgs:
        rows = MessageReaction.query.filter(MessageReaction.message_id.in_(list(by_id))).all()
        for r in rows:
            reactions.setdefault(r.message_id, []).append(r.to_dict())

    res = []
    for m in msgs:
        d = m.to_dict()
        if m.reply_to_id:
            parent = by_id.get(m.reply_to_id)
            d["reply_to"] = {
                "id": parent.id,
                "sender_id": parent.sender_id,
                "content": "" if parent.is_deleted else parent.content,
            } if parent else None
        d["reactions"] = reactions.get(m.id, [])
        if d["media_url"] and m.media_type == "voice":
            try:
                d["media_signed_url"] = refresh_signed_url(BUCKET_CHAT_VOICES, m.media_url)
            except StorageError as e:
                logger.warning("sign voice failed msg=%s: %s", m.id, e)
                d["media_signed_url"] = None
        res.append(d)
    return {"ok": True, "conversation": conv.to_dict(), "messages": res}
