# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Allow ``python -m spectre``."""

import sys

from spectre.service import main


sys.exit(main())
