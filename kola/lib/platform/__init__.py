# Copyright (c) 2019 SUSE LINUX GmbH
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from typing import Optional, Type

from kola.lib.exceptions import KolaError
from kola.lib.platform.cluster_base import ClusterBase
from kola.lib.workspace import Workspace


PLATFORMS = ("aws", "azure", "openstack", "packet", "ibmcloud", "oci",
             "qemu")


def get_cluster_class(platform: str) -> Type[ClusterBase]:
    # Only the selected vendor SDK gets imported
    platform = platform.lower()
    if platform == 'aws':
        from kola.lib.platform.aws import Cluster
    elif platform == 'azure':
        from kola.lib.platform.azure import Cluster  # type: ignore
    elif platform == 'openstack':
        from kola.lib.platform.openstack import Cluster  # type: ignore
    elif platform == 'packet':
        from kola.lib.platform.packet import Cluster  # type: ignore
    elif platform == 'ibmcloud':
        from kola.lib.platform.ibmcloud import Cluster  # type: ignore
    elif platform == 'oci':
        from kola.lib.platform.oci import Cluster  # type: ignore
    elif platform == 'qemu':
        from kola.lib.platform.qemu import Cluster  # type: ignore
    else:
        raise KolaError(f"Platform '{platform}' not yet supported by kola")
    return Cluster


def new_cluster(platform: str, workspace: Workspace,
                log: Optional[logging.Logger] = None) -> ClusterBase:
    """Create the cluster of `platform`; nothing is provisioned until the
    first machine is requested"""
    return get_cluster_class(platform)(workspace, log=log)
