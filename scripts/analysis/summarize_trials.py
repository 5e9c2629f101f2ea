from __future__ import annotations

import argparse
import os
from typing import List

import pandas as pd

STATISTICS = ("CA", "CR")
RESERVED = {"Img", "Distance", "R", "CA", "CR"}


def statistic_column(table: pd.DataFrame) -> str:
    for col in STATISTICS:
        if col in table.columns:
            return col
    raise KeyError("result table has neither a CA nor a CR column")


def summarize(table: pd.DataFrame, by_image: bool = True) -> pd.DataFrame:
    """Mean, std and trial count of the statistic per group and distance, NaN ignored."""
    stat = statistic_column(table)
    keys: List[str] = [c for c in table.columns if c not in RESERVED]
    if by_image:
        keys = ["Img"] + keys
    keys = keys + ["Distance"]
    grouped = table.groupby(keys, dropna=False, sort=True)[stat]
    out = grouped.agg(["mean", "std", "count"]).reset_index()
    return out.rename(columns={"mean": f"{stat}_mean", "std": f"{stat}_std", "count": "n"})


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--input", required=True, help="result CSV written by coagg3d")
    ap.add_argument("--output", required=True, help="summary CSV path")
    ap.add_argument("--pooled", action="store_true", help="pool images instead of summarizing each")
    args = ap.parse_args()

    table = pd.read_csv(args.input)
    out = summarize(table, by_image=not args.pooled)
    os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
    out.to_csv(args.output, index=False)
    print(f"Wrote {args.output} with {len(out)} rows.")


if __name__ == "__main__":
    main()
