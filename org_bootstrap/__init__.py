# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Org Bootstrap

Idempotent provisioning of an AWS organization, per-environment member
accounts, GitHub Actions OIDC deployment roles and Terraform state backends.
"""

__version__ = "1.0.0"
