import os
import copy
import yaml
import json
import hashlib
from typing import Any, Dict, Optional, Tuple


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML from `path` or `config/params.yaml`."""
    p = path or os.environ.get("SPOTSEG_PARAMS") or _params_path()
    if not os.path.isfile(p):
        if path is not None:
            raise FileNotFoundError(f"Params file not found: {path}")
        return {}
    with open(p, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


DEFAULT_PARAMS: Dict[str, Any] = {
    'real_edge_weight': 1.0,
    'self_edge_weight': None,
    'k_neighbors': 20,
    'update_priors': 'no',
    'graph': {
        'filter': True,
        'n_mads': 2.0,
    },
    'bmm': {
        'max_iters': 100,
        'tol': 0.001,
        'stochastic': False,
        'size_penalty': 1.0,
        'min_noise_frac': 0.001,
        'new_components_per_sweep': 0,
        'update_cooccurrence': True,
        'time_budget': None,
    },
    'partitions': {
        'n_frames': 1,
        'n_jobs': None,
    },
    'random_state': None,
}

# Keys that change the model itself; partitions merged together should agree on them.
MODEL_PARAM_KEYS: Tuple[str, ...] = (
    'real_edge_weight', 'self_edge_weight', 'k_neighbors', 'update_priors',
    'graph.filter', 'graph.n_mads',
    'bmm.stochastic', 'bmm.size_penalty', 'bmm.min_noise_frac', 'bmm.update_cooccurrence',
)


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def _deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def segmentation_params(cfg: Optional[Dict[str, Any]] = None, **overrides) -> Dict[str, Any]:
    """Merge the `segmentation` section of `cfg` and keyword overrides over the defaults.

    Overrides use the flat names (`max_iters`, `n_mads`, ...) or dotted keys
    (`bmm.max_iters`); flat names are resolved against the nested defaults.
    """
    params = copy.deepcopy(DEFAULT_PARAMS)
    if cfg:
        _deep_update(params, cfg.get('segmentation', {}) or {})
    for key, value in overrides.items():
        if value is None:
            continue
        if '.' in key:
            section, name = key.split('.', 1)
            if not isinstance(params.get(section), dict) or name not in params[section]:
                raise KeyError(f"Unknown segmentation parameter: {key}")
            params[section][name] = value
            continue
        if key in params and not isinstance(params[key], dict):
            params[key] = value
            continue
        for section in ('graph', 'bmm', 'partitions'):
            if key in params[section]:
                params[section][key] = value
                break
        else:
            raise KeyError(f"Unknown segmentation parameter: {key}")

    if float(params['real_edge_weight']) <= 0:
        raise ValueError(f"real_edge_weight must be positive, got {params['real_edge_weight']}")
    if int(params['k_neighbors']) < 1:
        raise ValueError(f"k_neighbors must be >= 1, got {params['k_neighbors']}")
    return params


def params_subset(params: Dict[str, Any], keys: Tuple[str, ...] = MODEL_PARAM_KEYS) -> Dict[str, Any]:
    return {k: _get_by_path(params, k) for k in keys}


def fingerprint_params(params: Dict[str, Any], keys: Tuple[str, ...] = MODEL_PARAM_KEYS) -> str:
    sub = params_subset(params, keys)
    payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
