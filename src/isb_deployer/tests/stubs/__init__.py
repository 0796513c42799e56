# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

# pylint: skip-file

"""
Canned AWS and GitHub responses shared by the tests
"""
