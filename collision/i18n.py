# collision/i18n.py
from __future__ import annotations

from typing import Any, Dict


def normalize_lang(code: str | None) -> str:
    """
    Normalize an Accept-Language value (zh-CN, en-US;q=0.8, ...) to: zh / en
    """
    if not code:
        return "zh"

    code = code.split(",")[0].strip().lower()

    if code.startswith("zh"):
        return "zh"
    if code.startswith("en"):
        return "en"

    return "zh"


LANG_DATA: Dict[str, Dict[str, str]] = {
    "en": {
        # ----- envelope -----
        "OK": "success",

        # ----- errors -----
        "ERR_INTERNAL": "Internal server error",
        "ERR_VALIDATION": "Invalid request",
        "ERR_UNAUTHORIZED": "Not authorized, please log in",
        "ERR_FORBIDDEN": "Permission denied",
        "ERR_NOT_FOUND": "Resource not found",
        "ERR_NO_CANDIDATES": "No users available for Haidilao",
        "ERR_CONFLICT": "The record was changed by another operation",
        "ERR_INSUFFICIENT_BALANCE": "Insufficient coins: {balance}, need {required}",
        "ERR_DEADLINE_PASSED": "Matching expired, use force add instead",
        "ERR_TOO_EARLY": "Still within the add-friend window, cannot force add",

        "ERR_TAG_EMPTY": "Please enter a collision code",
        "ERR_TAG_TOO_LONG": "Collision code is limited to {limit} characters",
        "ERR_TAG_FORBIDDEN": "This collision code contains a forbidden word",
        "ERR_AGE_RANGE": "Minimum age cannot be greater than maximum age",
        "ERR_GENDER": "Unknown gender value",
        "ERR_VALIDITY_DAYS": "Validity must be between 1 and {limit} days",
        "ERR_BATCH_SIZE": "Submit between 1 and {limit} collision codes at once",
        "ERR_EMAIL_CONTENT": "Email content must be 1 to {limit} characters",
        "ERR_AMOUNT": "Amount must be greater than zero",
        "ERR_PAGE": "Invalid page parameters",
        "ERR_IDEMPOTENCY_REUSED": "Idempotency key already used for another operation",
        "ERR_NOT_OWNER": "This collision code does not belong to you",
        "ERR_NOT_PARTY": "Not authorized for this match",
        "ERR_CODE_NOT_FOUND": "Collision code not found",
        "ERR_CODE_DELETED": "Collision code has been deleted",
        "ERR_CODE_NOT_REJECTED": "Only rejected collision codes can be resubmitted",
        "ERR_CODE_NOT_PENDING": "Collision code is not waiting for review",
        "ERR_NO_CODE_FOR_TAG": "Submit this collision code before using Haidilao",
        "ERR_MATCH_NOT_FOUND": "Match record not found",
        "ERR_MATCH_NOT_OPEN": "Match status does not allow this action",
        "ERR_FORCE_ADD_DISABLED": "The other user does not allow force add",
        "ERR_PARTNER_NO_EMAIL": "The other user has no verified email",
        "ERR_ADMIN_ONLY": "Admin permission required",
        "ERR_CALLBACK_SECRET": "Invalid callback signature",
        "ERR_NO_CHANGES": "Nothing to update",
        "ERR_CODE_REJECTED": "Rejected collision codes must be resubmitted",
        "ERR_REMARK_TOO_LONG": "Remark is limited to {limit} characters",
        "ERR_EMAIL_INVALID": "Invalid email address",
        "ERR_EMAIL_CODE": "Wrong verification code",
        "ERR_EMAIL_CODE_EXPIRED": "Verification code expired",

        # ----- ledger reasons -----
        "REASON_COLLISION_SUBMIT": "Collision submit",
        "REASON_RENEW_COLLISION": "Collision renewal",
        "REASON_COLLISION_REFUND": "Collision refund",
        "REASON_HAIDILAO": "Haidilao",
        "REASON_FORCE_ADD": "Force add",
        "REASON_SEND_EMAIL": "Send email",
        "REASON_RECHARGE": "Recharge",
        "REASON_REFUND": "Refund",
        "REASON_MATCH_REWARD": "Match reward",
        "REASON_SYSTEM": "System adjustment",

        # ----- email -----
        "EMAIL_MATCH_SUBJECT": "You have a new message from your match",
        "EMAIL_MATCH_INTRO": "Someone you matched with on \"{tag}\" sent you a message:",
        "EMAIL_VERIFY_SUBJECT": "Your email verification code",
        "EMAIL_VERIFY_BODY": "Your verification code is {code}. It expires in {minutes} minutes.",
    },
    "zh": {
        "OK": "操作成功",

        "ERR_INTERNAL": "服务器内部错误",
        "ERR_VALIDATION": "请求参数错误",
        "ERR_UNAUTHORIZED": "未授权，请登录",
        "ERR_FORBIDDEN": "禁止访问，权限不足",
        "ERR_NOT_FOUND": "资源不存在",
        "ERR_NO_CANDIDATES": "暂无可海底捞的用户",
        "ERR_CONFLICT": "资源冲突",
        "ERR_INSUFFICIENT_BALANCE": "碰撞币不足: 当前余额 {balance}, 需要 {required}",
        "ERR_DEADLINE_PASSED": "匹配已过期，请使用强制添加",
        "ERR_TOO_EARLY": "仍在加好友有效期内，无法强制添加",

        "ERR_TAG_EMPTY": "请输入碰撞码",
        "ERR_TAG_TOO_LONG": "碰撞码最多{limit}个字",
        "ERR_TAG_FORBIDDEN": "碰撞码包含违禁词",
        "ERR_AGE_RANGE": "最小年龄不能大于最大年龄",
        "ERR_GENDER": "性别参数错误",
        "ERR_VALIDITY_DAYS": "有效期为1到{limit}天",
        "ERR_BATCH_SIZE": "单次最多提交{limit}个碰撞码",
        "ERR_EMAIL_CONTENT": "邮件内容为1到{limit}个字",
        "ERR_AMOUNT": "金额必须大于0",
        "ERR_PAGE": "分页参数错误",
        "ERR_IDEMPOTENCY_REUSED": "请求标识已被其他操作使用",
        "ERR_NOT_OWNER": "无权操作该碰撞码",
        "ERR_NOT_PARTY": "无权查看该匹配",
        "ERR_CODE_NOT_FOUND": "碰撞码不存在",
        "ERR_CODE_DELETED": "碰撞码已删除",
        "ERR_CODE_NOT_REJECTED": "只有被拒绝的碰撞码可以重新提交",
        "ERR_CODE_NOT_PENDING": "碰撞码不在待审核状态",
        "ERR_NO_CODE_FOR_TAG": "请先发布该碰撞码",
        "ERR_MATCH_NOT_FOUND": "匹配记录不存在",
        "ERR_MATCH_NOT_OPEN": "当前匹配状态不允许该操作",
        "ERR_FORCE_ADD_DISABLED": "对方不允许强制添加",
        "ERR_PARTNER_NO_EMAIL": "对方邮箱未验证",
        "ERR_ADMIN_ONLY": "需要管理员权限",
        "ERR_CALLBACK_SECRET": "回调签名无效",
        "ERR_NO_CHANGES": "没有需要修改的内容",
        "ERR_CODE_REJECTED": "被拒绝的碰撞码请重新提交",
        "ERR_REMARK_TOO_LONG": "备注最多{limit}个字",
        "ERR_EMAIL_INVALID": "邮箱格式不正确",
        "ERR_EMAIL_CODE": "验证码错误",
        "ERR_EMAIL_CODE_EXPIRED": "验证码已过期",

        "REASON_COLLISION_SUBMIT": "碰撞提交",
        "REASON_RENEW_COLLISION": "续期碰撞",
        "REASON_COLLISION_REFUND": "删除返还",
        "REASON_HAIDILAO": "海底捞",
        "REASON_FORCE_ADD": "强制添加",
        "REASON_SEND_EMAIL": "发送邮件",
        "REASON_RECHARGE": "充值",
        "REASON_REFUND": "退款",
        "REASON_MATCH_REWARD": "匹配奖励",
        "REASON_SYSTEM": "系统调整",

        "EMAIL_MATCH_SUBJECT": "小程序匹配成功，用户给你发信息啦",
        "EMAIL_MATCH_INTRO": "与你在「{tag}」上碰撞成功的用户给你发来信息：",
        "EMAIL_VERIFY_SUBJECT": "邮箱验证码",
        "EMAIL_VERIFY_BODY": "你的验证码是 {code}，{minutes}分钟内有效。",
    },
}


def t(lang: str | None, key: str, **params: Any) -> str:
    """
    Simple lookup:
    1. try lang
    2. fall back to en
    3. fall back to the key itself
    """
    lang = normalize_lang(lang)
    data = LANG_DATA.get(lang, {})
    text = data.get(key)
    if text is None:
        text = LANG_DATA["en"].get(key, key)
    if params:
        try:
            return text.format(**params)
        except (KeyError, IndexError):
            return text
    return text


def reason_display(lang: str | None, reason: str) -> str:
    return t(lang, f"REASON_{reason.upper()}")
