# bpmf/config.py

import copy
import os
import yaml

from bpmf.errors import ConfigError
from bpmf.model.evaluate import DEFAULT_THRESHOLD
from bpmf.sync.collective import COLLECTIVES

DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'default.yaml')

DEFAULTS = {
    'model': {
        'num_latent': None,
        'alpha': 2.0,
        'b0': 2.0,
        'df': None,
    },
    'sampler': {
        'burnin': 5,
        'nsims': 20,
        'seed': None,
        'n_jobs': 1,
    },
    'eval': {
        'threshold': None,
    },
    'runtime': {
        'comm': 'local',
        'verbose': True,
    },
}


def load_config(path=None):
    """
    Read a YAML config and fill in defaults. path=None gives the defaults.
    """
    config = copy.deepcopy(DEFAULTS)
    if path is None:
        return config
    if not os.path.exists(path):
        raise ConfigError(f"Could not find config file {path}")
    with open(path, 'r') as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: {e}") from e
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    for section, values in loaded.items():
        if section not in config:
            raise ConfigError(f"{path}: unknown section '{section}'")
        if not isinstance(values, dict):
            raise ConfigError(f"{path}: section '{section}' must be a mapping")
        for key, value in values.items():
            if key not in config[section]:
                raise ConfigError(f"{path}: unknown key '{section}.{key}'")
            config[section][key] = value
    return config


def _coerce(config, section, key, cast, optional=False):
    value = config[section][key]
    if optional and value is None:
        return
    try:
        config[section][key] = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value for {section}.{key}: {value!r}") from e


def validate_config(config):
    model, sampler = config['model'], config['sampler']
    evaluation, runtime = config['eval'], config['runtime']
    if model['num_latent'] is None:
        raise ConfigError("model.num_latent (latent rank) is required")
    _coerce(config, 'model', 'num_latent', int)
    _coerce(config, 'model', 'alpha', float)
    _coerce(config, 'model', 'b0', float)
    _coerce(config, 'model', 'df', float, optional=True)
    _coerce(config, 'sampler', 'burnin', int)
    _coerce(config, 'sampler', 'nsims', int)
    _coerce(config, 'sampler', 'n_jobs', int)
    _coerce(config, 'eval', 'threshold', float, optional=True)
    if model['num_latent'] < 1:
        raise ConfigError(f"model.num_latent must be >= 1, got {model['num_latent']}")
    if model['b0'] <= 0:
        raise ConfigError(f"model.b0 must be positive, got {model['b0']}")
    if sampler['n_jobs'] == 0:
        raise ConfigError("sampler.n_jobs must be non-zero")
    if not isinstance(runtime['comm'], str) or runtime['comm'] not in COLLECTIVES:
        raise ConfigError(f"runtime.comm must be one of {sorted(COLLECTIVES)}, "
                          f"got {runtime['comm']!r}")
    if not isinstance(runtime['verbose'], bool):
        raise ConfigError(f"runtime.verbose must be true or false, got {runtime['verbose']!r}")
    if evaluation['threshold'] is None:
        evaluation['threshold'] = DEFAULT_THRESHOLD
    return config
