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

# All settings come from config/*.toml, one file per platform, and can be
# overridden from the environment with a KOLA_ prefix. Nested platform
# settings use a double underscore, eg. KOLA_AWS__REGION=eu-central-1.

import os
import pathlib

from dynaconf import Dynaconf, Validator
from dynaconf.utils.parse_conf import get_converter


settings_dir = os.path.realpath(os.path.join(
    pathlib.Path(__file__).parent.absolute(), '../config'))

platform_files = ['aws', 'azure', 'openstack', 'packet', 'ibmcloud', 'oci',
                  'qemu']

settings = Dynaconf(
    envvar_prefix='KOLA',
    load_dotenv=True,
    settings_files=[os.path.join(settings_dir, 'settings.toml')] + [
        os.path.join(settings_dir, f"{name}.toml")
        for name in platform_files],
    validators=[
        Validator('PLATFORM', is_in=platform_files),
        Validator('PARALLEL', gte=1),
        Validator('SSH_TIMEOUT', 'GC_GRACE_PERIOD', gt=0),
    ],
)


# Values set through the environment inside a nested table (eg.
# KOLA_QEMU__ENABLE_KVM=false) are not cast, so callers convert them here.
def converter(converter_key, value, box_settings=None):
    return get_converter(converter_key, value, box_settings)
