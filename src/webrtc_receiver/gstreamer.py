# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import logging

logger = logging.getLogger("gstreamer")
logger.setLevel(logging.INFO)

_gst_imported = False
_Gst = None


class MediaPipelineError(Exception):
    pass


def ensure_gst_imported():
    """Lazy initialization of GStreamer dependencies, returns the Gst module"""
    global _gst_imported, _Gst
    if not _gst_imported:
        try:
            import gi
            gi.require_version('Gst', "1.0")
            from gi.repository import Gst
            Gst.init(None)
            _Gst = Gst
            _gst_imported = True
            logger.info("GStreamer-Python install looks OK")
        except Exception as e:
            msg = """ERROR: could not find working GStreamer-Python installation.

    The receiver needs GStreamer 1.22 or newer with the Rust WebRTC plugin (webrtcsrc, from gst-plugins-rs)
    and the PyGObject bindings. If GStreamer is installed at a custom location, set GSTREAMER_PATH and make
    sure your environment points at it, for example:

    export GSTREAMER_PATH="${GSTREAMER_PATH:-$(pwd)}"
    export PATH="${GSTREAMER_PATH}/bin${PATH:+:${PATH}}"
    export LD_LIBRARY_PATH="${GSTREAMER_PATH}/lib/x86_64-linux-gnu${LD_LIBRARY_PATH:+:${LD_LIBRARY_PATH}}"
    export GST_PLUGIN_PATH="${GSTREAMER_PATH}/lib/x86_64-linux-gnu/gstreamer-1.0${GST_PLUGIN_PATH:+:${GST_PLUGIN_PATH}}"
    export GI_TYPELIB_PATH="${GSTREAMER_PATH}/lib/x86_64-linux-gnu/girepository-1.0:/usr/lib/x86_64-linux-gnu/girepository-1.0${GI_TYPELIB_PATH:+:${GI_TYPELIB_PATH}}"

    Replace "x86_64-linux-gnu" in other architectures manually or use "$(gcc -print-multiarch)" in place.
    """
            logger.error(msg)
            logger.error(e)
            raise MediaPipelineError("Unable to import gstreamer packages") from e
    return _Gst


def check_plugins(Gst):
    """Returns the names of required GStreamer plugins that are not registered"""
    registry = Gst.Registry.get()
    required = ["rswebrtc", "app", "audioconvert", "audioresample", "autodetect", "coreelements"]
    missing = [p for p in required if not registry.find_plugin(p)]

    # videoconvert and videoscale were merged into one plugin in GStreamer 1.22
    if not registry.find_plugin("videoconvertscale"):
        missing += [p for p in ["videoconvert", "videoscale"] if not registry.find_plugin(p)]
    return missing


def make_element(Gst, factory, name=None, **properties):
    """Creates an element and applies properties, dashes in names come from underscores.

    Returns None when the factory is not available.
    """
    element = Gst.ElementFactory.make(factory, name)
    if element is None:
        return None
    for key, value in properties.items():
        element.set_property(key.replace("_", "-"), value)
    return element
