# Copyright 2025 iGenius S.p.A
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

from rich.console import Console

from transform_deploy.backends.remote import RemoteExecutor
from transform_deploy.config.parameters import LogParameters
from transform_deploy.helpers.logger import setup_logger
from transform_deploy.platform.protocols import ClientFactory, CommandInvocation
from transform_deploy.remote.script import (
    ServiceLayout,
    as_ssm_commands,
    render_diagnostics,
    render_print_file,
)

logger = setup_logger(__name__, level=logging.INFO)


class LogFetcher:
    """Read a log file, or the service diagnostics, from an instance.

    Unlike deployments, a fetch is dispatched once; there is nothing to gain
    from resending a read-only command.
    """

    def __init__(self, session: ClientFactory, *, console: Console | None = None):
        self.console = console or Console()
        self.executor = RemoteExecutor(session, console=self.console, attempts=1)

    def script_for(self, params: LogParameters, tail_lines: int = 200) -> str:
        if params.log_path:
            return render_print_file(params.log_path, tail_lines=tail_lines)
        return render_diagnostics(
            ServiceLayout(params.binary_name), journal_lines=tail_lines, tail_lines=tail_lines
        )

    def fetch(self, params: LogParameters, tail_lines: int = 200) -> str:
        what = params.log_path or f"{params.binary_name} diagnostics"
        logger.info(f"Fetching {what} from [cyan]{params.instance_id}[/cyan]")
        self.executor.wait_agent_online(params.instance_id)
        invocation: CommandInvocation = self.executor.dispatch(
            params.instance_id,
            as_ssm_commands(self.script_for(params, tail_lines)),
            comment=f"Fetch {what}",
        )
        self.executor.wait_for_command(invocation)
        self.console.print(invocation.stdout, markup=False, highlight=False, end="")
        return invocation.stdout
