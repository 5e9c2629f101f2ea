from __future__ import annotations

from typing import Mapping, Optional, Sequence

import pandas as pd

from neighborhood import ConfigurationError

Naming = Mapping[str, Sequence[str]]


def metadata_columns(naming: Optional[Naming]) -> list[str]:
    if not naming:
        return []
    cols = list(naming.keys())
    for name, candidates in naming.items():
        if isinstance(candidates, str):
            raise ConfigurationError(f"naming[{name!r}] must be a list of substrings, not a string")
    return cols


def match_tag(identifier: str, candidates: Sequence[str]) -> Optional[str]:
    """Candidate found in identifier; the last listed candidate wins on ties."""
    found = None
    for c in candidates:
        if c in identifier:
            found = c
    return found


def annotate(table: pd.DataFrame, naming: Optional[Naming], column: str = "Img") -> pd.DataFrame:
    """Add one column per naming rule, filled by substring match on `column`.

    Rows whose identifier matches no candidate get None.
    """
    cols = metadata_columns(naming)
    clash = [c for c in cols if c in table.columns]
    if clash:
        raise ConfigurationError(f"naming columns clash with result columns: {clash}")
    out = table.copy()
    ids = out[column].astype(str)
    for name in cols:
        candidates = list(naming[name])
        lut = {s: match_tag(s, candidates) for s in ids.unique()}
        out[name] = pd.Series([lut[s] for s in ids], index=out.index, dtype=object)
    return out


__all__ = ["annotate", "match_tag", "metadata_columns"]
