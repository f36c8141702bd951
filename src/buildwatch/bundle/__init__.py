"""Bundling, production packaging and the live-reload dev server."""

from .bundler import BundleOptions, EsbuildBundler
from .packaging import PackageResult, compress_outputs, copy_static_assets, package
from .server import DevServer, inject_livereload

__all__ = [
    "BundleOptions",
    "DevServer",
    "EsbuildBundler",
    "PackageResult",
    "compress_outputs",
    "copy_static_assets",
    "inject_livereload",
    "package",
]
