from enum import Enum


class ReportStatus(str, Enum):
    PENDING = "pending"
    ACTIONED = "actioned"
    DISMISSED = "dismissed"


class ModerationAction(str, Enum):
    """
    管理员处理举报的动作
    DISMISS 只关闭举报；WARNING / TEMPORARY_BAN 同时写入被举报用户的 account_status
    """
    DISMISS = "dismiss"
    WARNING = "warning"
    TEMPORARY_BAN = "temporary_ban"


class AccountStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    TEMPORARY_BAN = "temporary_ban"
    BANNED = "banned"


# 限制购买和聊天的账号状态
RESTRICTED_STATUSES = {AccountStatus.BANNED.value, AccountStatus.TEMPORARY_BAN.value}

REPORT_TYPES = {"user", "message"}


def parse_action(value):
    try:
        return ModerationAction(str(value))
    except ValueError:
        return None


def parse_account_status(value):
    try:
        return AccountStatus(str(value))
    except ValueError:
        return None
