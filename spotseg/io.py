import os
import numpy as np
import pandas as pd
from typing import List, Optional, Tuple
from shapely.geometry import Polygon
from shapely import wkb

from .errors import InvalidSchema

DEFAULT_CONFIDENCE = 0.95


def _read_table(path: str) -> pd.DataFrame:
    if path.endswith(".parquet"):
        return pd.read_parquet(path)
    return pd.read_csv(path)


def read_molecules(path: str, x_col: str = "x", y_col: str = "y", gene_col: str = "gene",
                   confidence_col: Optional[str] = "confidence") -> Tuple[pd.DataFrame, List[str]]:
    """Read a molecule table and encode gene names as indices.

    Returns the table with columns `x`, `y`, `gene` (int, index into the returned
    vocabulary) and `confidence`, together with the sorted gene vocabulary.
    """
    df = _read_table(path)
    required = {x_col, y_col, gene_col}
    missing = required - set(df.columns)
    if missing:
        raise InvalidSchema(f"Missing columns in molecules file {path}: {sorted(missing)}")

    df = df.rename(columns={x_col: "x", y_col: "y", gene_col: "gene"})
    if confidence_col and confidence_col in df.columns:
        df = df.rename(columns={confidence_col: "confidence"})
    else:
        df["confidence"] = DEFAULT_CONFIDENCE

    gene_names = sorted(df["gene"].astype(str).unique())
    codes = pd.Categorical(df["gene"].astype(str), categories=gene_names).codes
    df["gene"] = codes.astype(np.int64)
    df["x"] = df["x"].astype(np.float64)
    df["y"] = df["y"].astype(np.float64)
    df["confidence"] = df["confidence"].astype(np.float64).clip(0.0, 1.0)
    return df, gene_names


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def save_table(df: pd.DataFrame, path: str) -> None:
    # Shapely geometries are stored as WKB hex so parquet/csv can hold them
    df2 = df.copy()
    for col in df2.columns:
        if col.endswith("_polygon"):
            df2[col] = df2[col].apply(lambda g: wkb.dumps(g).hex() if g is not None else None)
    parent = os.path.dirname(path)
    if parent:
        ensure_dir(parent)
    if path.endswith(".parquet"):
        df2.to_parquet(path, index=False)
    else:
        df2.to_csv(path, index=False)


def load_table(path: str) -> pd.DataFrame:
    df = _read_table(path)
    for col in df.columns:
        if col.endswith("_polygon"):
            def to_poly(val: Optional[str]) -> Optional[Polygon]:
                if val is None or (isinstance(val, float) and pd.isna(val)):
                    return None
                return wkb.loads(bytes.fromhex(val))
            df[col] = df[col].apply(to_poly)
    return df
