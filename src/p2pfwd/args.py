"""Whitespace tokenizer for interactive command lines."""
from __future__ import annotations

from typing import List


def split_args(line: str, n: int) -> List[str]:
    """Divide ``line`` em exatamente ``n`` tokens separados por espaços.

    O último token, uma vez iniciado, recebe o restante da linha sem
    alterações (espaços internos e finais incluídos). Tokens ausentes ficam
    como string vazia.
    """

    if n <= 0:
        return []

    args = [""] * n
    start = -1
    index = 0

    for pos, char in enumerate(line):
        if start == -1:
            if char.isspace():
                continue
            start = pos
        elif index + 1 == n:
            args[index] = line[start:]
            start = -1
            break
        elif char.isspace():
            args[index] = line[start:pos]
            start = -1
            index += 1

    if start != -1:
        args[index] = line[start:]

    return args
