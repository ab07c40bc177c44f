# Copyright (c) 2020 SUSE LLC
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

"""
A trivial Omaha update server

It offers a single package at a fixed version to every update check, which
is all update_engine needs to install a payload during a test::

    server = OmahaServer("10.0.0.1", 0)
    server.add_package("/path/to/update.gz", "update.gz")
    server.set_version("9999.9.9")
    server.start()
    ...
    server.shutdown()
"""

import base64
import hashlib
import logging
import os
import threading
from typing import Dict, Optional, Tuple
from xml.dom import minidom

import flask
import werkzeug.serving


logger = logging.getLogger(__name__)

UPDATE_PATH = "/v1/update"
PACKAGES_PATH = "/packages"


class Package():
    def __init__(self, path: str, name: str):
        self.path = path
        self.name = name
        sha1 = hashlib.sha1()
        sha256 = hashlib.sha256()
        self.size = 0
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b''):
                sha1.update(chunk)
                sha256.update(chunk)
                self.size += len(chunk)
        # update_engine wants the digests base64 encoded
        self.sha1 = base64.b64encode(sha1.digest()).decode()
        self.sha256 = base64.b64encode(sha256.digest()).decode()


def _updatecheck(doc: minidom.Document, package: Optional[Package],
                 version: str, codebase: str) -> minidom.Element:
    check = doc.createElement('updatecheck')
    if package is None or not version:
        check.setAttribute('status', 'noupdate')
        return check
    check.setAttribute('status', 'ok')

    urls = doc.createElement('urls')
    url = doc.createElement('url')
    url.setAttribute('codebase', codebase)
    urls.appendChild(url)
    check.appendChild(urls)

    manifest = doc.createElement('manifest')
    manifest.setAttribute('version', version)
    packages = doc.createElement('packages')
    pkg = doc.createElement('package')
    pkg.setAttribute('name', package.name)
    pkg.setAttribute('hash', package.sha1)
    pkg.setAttribute('size', str(package.size))
    pkg.setAttribute('required', 'true')
    packages.appendChild(pkg)
    manifest.appendChild(packages)

    actions = doc.createElement('actions')
    action = doc.createElement('action')
    action.setAttribute('event', 'postinstall')
    action.setAttribute('sha256', package.sha256)
    actions.appendChild(action)
    manifest.appendChild(actions)
    check.appendChild(manifest)
    return check


def build_response(request_xml: bytes, package: Optional[Package],
                   version: str, codebase: str) -> bytes:
    """Answer every app of an Omaha request

    Update checks get the package, events and pings are acknowledged.
    """
    request = minidom.parseString(request_xml)
    doc = minidom.Document()
    response = doc.createElement('response')
    response.setAttribute('protocol', '3.0')
    response.setAttribute('server', 'kola')
    doc.appendChild(response)
    daystart = doc.createElement('daystart')
    daystart.setAttribute('elapsed_seconds', '0')
    response.appendChild(daystart)

    for app_request in request.getElementsByTagName('app'):
        app = doc.createElement('app')
        app.setAttribute('appid', app_request.getAttribute('appid'))
        app.setAttribute('status', 'ok')
        for child in app_request.childNodes:
            if child.nodeType != child.ELEMENT_NODE:
                continue
            if child.tagName == 'updatecheck':
                app.appendChild(_updatecheck(doc, package, version,
                                             codebase))
            elif child.tagName in ('event', 'ping'):
                ack = doc.createElement(child.tagName)
                ack.setAttribute('status', 'ok')
                app.appendChild(ack)
        response.appendChild(app)
    return doc.toxml(encoding='UTF-8')


class OmahaServer():
    def __init__(self, host: str = "0.0.0.0", port: int = 0,
                 log: Optional[logging.Logger] = None):
        self._log = log or logger
        self._package: Optional[Package] = None
        self._version = ""
        self._lock = threading.Lock()
        self.app = self._create_app()
        self._server = werkzeug.serving.make_server(
            host, port, self.app, threaded=True)
        self._thread: Optional[threading.Thread] = None

    def _create_app(self) -> flask.Flask:
        app = flask.Flask(__name__)

        @app.route(UPDATE_PATH, methods=['POST'])
        def update():
            with self._lock:
                package, version = self._package, self._version
            codebase = f"{flask.request.host_url.rstrip('/')}" \
                       f"{PACKAGES_PATH}/"
            try:
                body = build_response(flask.request.get_data(), package,
                                      version, codebase)
            except Exception as e:
                self._log.warning(f"omaha: bad request: {e}")
                flask.abort(400)
            return flask.Response(body, mimetype='text/xml')

        @app.route(f"{PACKAGES_PATH}/<name>", methods=['GET'])
        def package(name):
            with self._lock:
                package = self._package
            if package is None or package.name != name:
                flask.abort(404)
            self._log.info(f"omaha: serving {package.path}")
            return flask.send_file(package.path,
                                   mimetype='application/octet-stream')

        return app

    @property
    def addr(self) -> Tuple[str, int]:
        return self._server.server_address[:2]

    @property
    def port(self) -> int:
        return self._server.server_port

    def add_package(self, path: str, name: str):
        if not os.path.isfile(path):
            raise FileNotFoundError(f"update payload {path} not found")
        package = Package(path, name)
        with self._lock:
            self._package = package
        self._log.info(f"omaha: serving {path} as {name} ({package.size} "
                       "bytes)")

    def set_version(self, version: str):
        with self._lock:
            self._version = version

    def start(self):
        self._thread = threading.Thread(
            target=self._server.serve_forever, daemon=True)
        self._thread.start()
        self._log.info(f"omaha: listening on {self.addr[0]}:{self.port}")

    def serve_forever(self):
        self._server.serve_forever()

    def shutdown(self):
        # socketserver's shutdown blocks unless serve_forever is running
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join()
            self._thread = None
        self._server.server_close()
        self._log.info("omaha: stopped")
