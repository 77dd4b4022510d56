# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import argparse
import os
import logging

# Settings Precedence and Naming Convention
# -----------------------------------------
# 1. Command-line (CLI) arguments (e.g., --port 9000) have the highest precedence.
# 2. The environment variable (e.g., export WEBRTC_RECEIVER_PORT=9000) is used if no CLI flag is set.
# 3. The 'default' value in SETTING_DEFINITIONS is used if neither is set.
#
# A setting with `name: 'my_setting_name'` corresponds to:
#   - CLI Flag: --my-setting-name
#   - Environment Variable: WEBRTC_RECEIVER_MY_SETTING_NAME
#
# Boolean settings accept a `|locked` suffix (`export WEBRTC_RECEIVER_AUTOSTART="true|locked"`)
# and are stored as `(value, locked)` tuples.
#
# Codec lists, the first-producer auto-connect and the target latency are fixed
# in media_pipeline and signaling_monitor, they are not settings.

ENV_PREFIX = 'WEBRTC_RECEIVER_'

SETTING_DEFINITIONS = [
    # Signaling & Transport
    {'name': 'signaling_server', 'type': 'str', 'default': 'ws://127.0.0.1:8443', 'help': 'URI of the WebRTC signaling server the producer is registered with.'},
    {'name': 'stun_server', 'type': 'str', 'default': 'stun://stun.l.google.com:19302', 'help': 'STUN server used for ICE. Set to "" to disable.'},

    # Presentation API
    {'name': 'host', 'type': 'str', 'default': '127.0.0.1', 'help': 'Address the presentation API listens on.'},
    {'name': 'port', 'type': 'int', 'default': 8080, 'help': 'Port the presentation API listens on.'},
    {'name': 'autostart', 'type': 'bool', 'default': False, 'help': 'Start the receive pipeline as soon as the process starts.'},

    # Monitoring
    {'name': 'enable_metrics', 'type': 'bool', 'default': False, 'help': 'Serve Prometheus metrics.'},
    {'name': 'metrics_port', 'type': 'int', 'default': 8000, 'help': 'Port for the Prometheus metrics server.'},
    {'name': 'debug', 'type': 'bool', 'default': False, 'help': 'Enable debug logging.'},
]


class AppSettings:
    """
    Parses settings from CLI arguments and environment variables and stores them as attributes.
    """
    def __init__(self, setting, argv=None):
        parser = argparse.ArgumentParser(description="WebRTC low latency receiver")
        self._setting_definitions = setting
        self._add_arguments(parser)
        args, _ = parser.parse_known_args(argv)
        self._process_and_set_attributes(args)

    def _add_arguments(self, parser):
        """Programmatically add arguments to the parser from definitions."""
        for setting in self._setting_definitions:
            name = setting['name']
            cli_flag = f'--{name.replace("_", "-")}'
            env_var = f'{ENV_PREFIX}{name.upper()}'
            parser.add_argument(
                cli_flag,
                type=str,
                default=None,
                help=f"{setting['help']} (Env: {env_var})"
            )

    def _process_and_set_attributes(self, args):
        """Process parsed arguments and set them as class attributes."""
        for setting in self._setting_definitions:
            name = setting['name']
            stype = setting['type']
            cli_val = getattr(args, name, None)
            env_val = os.environ.get(f'{ENV_PREFIX}{name.upper()}')
            raw_value = cli_val if cli_val is not None else (env_val if env_val is not None else setting['default'])
            try:
                if stype == 'bool':
                    val_str = str(raw_value).lower()
                    is_locked = '|locked' in val_str
                    base_val_str = val_str.split('|')[0]
                    processed_value = (base_val_str in ['true', '1'], is_locked)
                elif stype == 'int':
                    processed_value = int(raw_value)
                else:
                    processed_value = str(raw_value)
            except (ValueError, TypeError) as e:
                logging.error(f"Could not parse setting '{name}' with value '{raw_value}'. Using default. Error: {e}")
                processed_value = setting['default']
                if stype == 'bool':
                    processed_value = (bool(processed_value), False)
            setattr(self, name, processed_value)


def load_settings(argv=None) -> AppSettings:
    settings = AppSettings(SETTING_DEFINITIONS, argv)
    if settings.debug[0]:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.INFO)
    return settings
