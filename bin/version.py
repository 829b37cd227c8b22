"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of miseq-demux.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

from importlib import metadata

try:
    __version__ = metadata.version("miseq-demux")
except metadata.PackageNotFoundError:
    __version__ = "2026.10.0"
