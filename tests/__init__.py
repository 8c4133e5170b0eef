# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

from hypothesis import settings


settings.register_profile("svdqmc", deadline=None, max_examples=50,
                          report_multiple_bugs=True, derandomize=True)
