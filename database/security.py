"""密码哈希。

新密码统一使用 pwdlib 推荐的算法（argon2）加盐慢哈希。
旧系统导入的账号保存的是无盐 sha256 十六进制摘要，仍可校验，
登录成功后由调用方换成新哈希。
"""
import hashlib
import hmac
import re
from typing import Optional, Tuple

from pwdlib import PasswordHash
from pwdlib.exceptions import UnknownHashError

password_hash = PasswordHash.recommended()

_LEGACY_SHA256 = re.compile(r"[0-9a-f]{64}")


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def is_legacy_hash(hashed_password: Optional[str]) -> bool:
    """是否为旧系统的无盐 sha256 摘要。"""
    return bool(hashed_password) and bool(_LEGACY_SHA256.fullmatch(hashed_password))


def verify_password(raw_password: str, hashed_password: Optional[str]) -> bool:
    """校验密码，无法识别的哈希格式视为不匹配。"""
    if not hashed_password:
        return False
    if is_legacy_hash(hashed_password):
        digest = hashlib.sha256(raw_password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, hashed_password)
    try:
        return password_hash.verify(raw_password, hashed_password)
    except UnknownHashError:
        return False


def verify_and_upgrade(raw_password: str,
                       hashed_password: Optional[str]
                       ) -> Tuple[bool, Optional[str]]:
    """校验密码，并在需要时给出替换用的新哈希。

    Returns:
        ``(是否匹配, 新哈希或 None)``。
    """
    if not hashed_password:
        return False, None
    if is_legacy_hash(hashed_password):
        if verify_password(raw_password, hashed_password):
            return True, hash_password(raw_password)
        return False, None
    try:
        return password_hash.verify_and_update(raw_password, hashed_password)
    except UnknownHashError:
        return False, None
