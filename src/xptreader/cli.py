"""
Convert SAS XPORT/XPT-format files to CSV.
"""

# Standard Library
import functools
import json
import logging
import logging.config
import sys

# Community Packages
import click
import yaml

# Xptreader Modules
import xptreader
import xptreader.v56

__all__ = [
    'cli',
]

try:
    yaml.load = functools.partial(yaml.load, Loader=yaml.CSafeLoader)
except AttributeError:
    yaml.load = functools.partial(yaml.load, Loader=yaml.SafeLoader)

DEFAULT_LOG_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'brief': {'format': '%(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'brief',
            'stream': 'ext://sys.stderr',
        },
    },
    'loggers': {
        'xptreader': {'level': 'WARNING', 'handlers': ['console']},
    },
}

try:
    with open('logging.yml') as file:
        LOG_CONFIG = yaml.load(file)
except FileNotFoundError:
    LOG_CONFIG = DEFAULT_LOG_CONFIG
logging.config.dictConfig(LOG_CONFIG)

LOG = logging.getLogger(__name__)
log_levels = [name for x, name in sorted(logging._levelToName.items()) if x]


@click.command(
    context_settings={'help_option_names': ['-h', '--help']},
)
@click.argument('input', type=click.File('rb'))
@click.argument(
    'output',
    type=click.File('wt'),
    default=sys.stdout,
)
@click.option(
    '--contents',
    is_flag=True,
    help='Show variable metadata instead of observations.',
)
@click.option(
    '--loglevel',
    metavar='LEVEL',
    type=click.Choice(log_levels, case_sensitive=False),
    help=f'Set logging level.  {{{", ".join(log_levels[:-1])}}}',
)
@click.version_option(version=str(xptreader.__version__))
def cli(input, output, contents, loglevel):
    """
    Convert SAS Transport (XPORT) files to comma-separated values (CSV).
    """
    if loglevel:
        for k, config in LOG_CONFIG.get('loggers', {}).items():
            config['level'] = loglevel.upper()
        logging.config.dictConfig(LOG_CONFIG)

    LOG.debug('Xptreader version %s', xptreader.__version__)
    LOG.debug('CLI arg --loglevel = %r', loglevel)
    LOG.debug('Using logging config %s', json.dumps(LOG_CONFIG, indent=2))

    try:
        if contents:
            reader = xptreader.v56.Reader(input)
            reader.read_headers()
            output.write(reader.table.contents.to_string())
            output.write('\n')
            return
        df = xptreader.v56.load(input)
    except xptreader.XportError as exc:
        raise click.ClickException(str(exc))
    LOG.info(f'Writing {len(df)} observations of {len(df.columns)} variables')
    df.to_csv(output, index=False)
