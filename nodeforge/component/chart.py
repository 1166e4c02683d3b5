"""Packaged chart handling shared by chart-installed components."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..downloader import chart_path
from ..errors import ComponentError
from ..models import Step, StepAction, StepNode
from .base import ExtraMetadata, Options, Runnable
from .registry import ComponentRole, component_key

logger = logging.getLogger("nodeforge.component.chart")

CHART_KIND = 'chart'
CHART_VERSION = 'v1'


@dataclass
class Chart(Runnable):
    """A chart package fetched onto the node before a release is installed."""
    pkg_name: str = ''
    version: str = ''
    offline: bool = False

    def type(self) -> str:
        return CHART_KIND

    def identity(self) -> str:
        return component_key(CHART_KIND, CHART_VERSION, ComponentRole.AGENT_STEP)

    def path(self, base_dir: str) -> str:
        return chart_path(base_dir, self.pkg_name, self.version)

    def init_step(self, metadata: ExtraMetadata, desired: 'Chart', nodes: List[StepNode], **kwargs) -> 'Chart':
        chart = Chart(pkg_name=desired.pkg_name, version=desired.version,
                      offline=metadata.offline or desired.offline)
        chart.set_action_steps(StepAction.INSTALL, chart.install_steps(nodes))
        chart.set_action_steps(StepAction.UNINSTALL, chart.uninstall_steps(nodes))
        return chart

    def install_steps(self, nodes: List[StepNode], reference_version: str = '') -> List[Step]:
        if not self.pkg_name or not self.version:
            raise ComponentError(f"chart package name and version are required, got {self.pkg_name!r} {self.version!r}")
        return [Step(
            name=f"loadChart-{self.pkg_name}",
            action=StepAction.INSTALL,
            timeout=timedelta(minutes=5),
            retry_times=1,
            nodes=tuple(nodes),
            commands=(self.command(self.identity()),),
        )]

    def uninstall_steps(self, nodes: List[StepNode]) -> List[Step]:
        return [Step(
            name=f"removeChart-{self.pkg_name}",
            action=StepAction.UNINSTALL,
            timeout=timedelta(minutes=1),
            err_ignore=True,
            retry_times=1,
            nodes=tuple(nodes),
            commands=(self.command(self.identity()),),
        )]

    def install(self, options: Options) -> Optional[bytes]:
        instance = options.downloader.new_instance(self.pkg_name, self.version, '', not self.offline, options.dry_run)
        path = instance.download_chart()
        logger.info(f"📦 Chart {self.pkg_name} {self.version} available at {path}")
        return path.encode('utf-8')

    def uninstall(self, options: Options) -> Optional[bytes]:
        instance = options.downloader.new_instance(self.pkg_name, self.version, '', not self.offline, options.dry_run)
        instance.remove_chart()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {'pkg_name': self.pkg_name, 'version': self.version, 'offline': self.offline}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Chart':
        return cls(pkg_name=data.get('pkg_name', ''), version=data.get('version', ''),
                   offline=bool(data.get('offline', False)))
