"""RFC 4648 base32 without padding, with a lenient decoder.

Authenticator apps display secrets in groups, lowercase, or with stray
padding; the decoder skips anything outside the alphabet instead of failing.
"""

ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ234567'
_LOOKUP = {symbol: index for index, symbol in enumerate(ALPHABET)}


def encode(data: bytes) -> str:
    out: list[str] = []
    buffer = 0
    bits = 0
    for byte in data:
        buffer = ((buffer << 8) | byte) & 0xFFF
        bits += 8
        while bits >= 5:
            bits -= 5
            out.append(ALPHABET[(buffer >> bits) & 0x1F])
    if bits:
        out.append(ALPHABET[(buffer << (5 - bits)) & 0x1F])
    return ''.join(out)


def decode(text: str) -> bytes:
    out = bytearray()
    buffer = 0
    bits = 0
    for symbol in text.upper():
        value = _LOOKUP.get(symbol)
        if value is None:
            continue
        buffer = ((buffer << 5) | value) & 0xFFFF
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((buffer >> bits) & 0xFF)
    return bytes(out)


def canonicalize(text: str) -> str:
    """Return the unpadded upper-case form that decodes to the same key bytes."""
    return encode(decode(text))
