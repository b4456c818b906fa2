import hmac
import secrets

BACKUP_CODE_ALPHABET = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'


def constant_time_compare(expected: str, submitted: str) -> bool:
    return hmac.compare_digest(expected.encode('utf-8'), submitted.encode('utf-8'))


def generate_backup_code(length: int = 8) -> str:
    return ''.join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))


def generate_backup_codes(count: int = 10, length: int = 8) -> list[str]:
    """Issue ``count`` distinct single-use codes, in generation order."""
    codes: list[str] = []
    while len(codes) < count:
        code = generate_backup_code(length)
        if code not in codes:
            codes.append(code)
    return codes
