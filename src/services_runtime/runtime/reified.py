"""
ReifiedService / ServiceBundle：把服务描述与 base context directory、executor prefix 绑定在一起。

说明：
- 只做上下文绑定与委托，不包含额外协议逻辑；
- ServiceBundle 是一组共享同一上下文、相互协作的服务。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generic, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from services_runtime.runtime.client import connect_to_running_service, connect_to_service
from services_runtime.runtime.protocol import Service, is_service

ConnT = TypeVar("ConnT")

PathArg = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class ReifiedService(Generic[ConnT]):
    """
    绑定了 base context directory（以及可选 executor prefix）的服务。

    字段：
    - service：服务描述
    - base_context_directory：服务命名空间根目录
    - executor_prefix：启动命令前缀（None 表示不加前缀）
    """

    service: Service[ConnT]
    base_context_directory: Path
    executor_prefix: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_context_directory", Path(self.base_context_directory))
        if self.executor_prefix is not None:
            object.__setattr__(self, "executor_prefix", tuple(str(x) for x in self.executor_prefix))

    @classmethod
    def reify_service(cls, service: Service[ConnT], base_context_directory: PathArg) -> "ReifiedService[ConnT]":
        """把服务绑定到指定 base context directory。"""

        return cls(service=service, base_context_directory=Path(base_context_directory))

    @classmethod
    def reify_service_with_executor(
        cls,
        service: Service[ConnT],
        base_context_directory: PathArg,
        executor_prefix: Sequence[str],
    ) -> "ReifiedService[ConnT]":
        """把服务绑定到指定 base context directory，并附带 executor prefix。"""

        return cls(
            service=service,
            base_context_directory=Path(base_context_directory),
            executor_prefix=tuple(executor_prefix),
        )

    @property
    def socket_path(self) -> Path:
        return self.base_context_directory / self.service.socket_name

    async def connect(self, liveness_timeout_sec: float) -> ConnT:
        """
        连接服务；未运行时尝试按需启动。

        参数：
        - liveness_timeout_sec：启动后等待服务就绪的最长时间（秒）

        只想连接已运行的服务时使用 `connect_to_running`。
        """

        return await connect_to_service(
            self.service,
            self.executor_prefix,
            self.base_context_directory,
            liveness_timeout_sec,
        )

    async def connect_to_running(self) -> ConnT:
        """连接已运行的服务，失败时不尝试启动。"""

        return await connect_to_running_service(self.service, self.base_context_directory)


def reify(
    service: Service[ConnT],
    base_context_directory: PathArg,
    executor_prefix: Optional[Sequence[str]] = None,
) -> ReifiedService[ConnT]:
    """`ReifiedService` 的便捷构造函数。"""

    if executor_prefix is None:
        return ReifiedService.reify_service(service, base_context_directory)
    return ReifiedService.reify_service_with_executor(service, base_context_directory, executor_prefix)


class ServiceBundle:
    """
    一组共享 base context directory / executor prefix 的服务。

    声明方式：
    - 子类以类属性声明服务描述（沿 MRO 收集，子类覆盖父类同名项）；
    - 或在构造时通过 `services=` 动态传入（覆盖同名类属性）。

    构造后每个服务都成为 `ReifiedService`，可通过下标（`bundle["echo"]`）访问；
    名字是合法标识符且不与 bundle 自身成员冲突时，也可通过属性（`bundle.echo`）访问。
    """

    def __init__(
        self,
        base_context_directory: PathArg,
        executor_prefix: Optional[Sequence[str]] = None,
        *,
        services: Optional[Mapping[str, Service[Any]]] = None,
    ) -> None:
        self._base_context_directory = Path(base_context_directory)
        self._executor_prefix = tuple(executor_prefix) if executor_prefix is not None else None

        declared: Dict[str, Service[Any]] = dict(self.declared_services())
        for name, svc in (services or {}).items():
            if not is_service(svc):
                raise TypeError(f"service {name!r} does not implement the Service protocol")
            declared[str(name)] = svc

        seen: Dict[str, str] = {}
        for name, svc in declared.items():
            other = seen.get(svc.socket_name)
            if other is not None:
                raise ValueError(f"services {other!r} and {name!r} share socket name {svc.socket_name!r}")
            seen[svc.socket_name] = name

        self._reified: Dict[str, ReifiedService[Any]] = {
            name: ReifiedService(
                service=svc,
                base_context_directory=self._base_context_directory,
                executor_prefix=self._executor_prefix,
            )
            for name, svc in declared.items()
        }
        for name, reified in self._reified.items():
            if self._can_expose_as_attribute(name):
                setattr(self, name, reified)

    def _can_expose_as_attribute(self, name: str) -> bool:
        """
        服务名能否作为实例属性暴露。

        说明：
        - 与 bundle 自身成员（`names`/`new`/`executor_prefix` 等）同名的服务只能通过 `bundle[name]` 访问；
        - 子类以类属性声明的服务描述不算冲突（实例属性覆盖之）。
        """

        if not name.isidentifier() or name.startswith("_"):
            return False
        existing = getattr(type(self), name, None)
        return existing is None or is_service(existing)

    @classmethod
    def new(cls, base_context_directory: PathArg) -> "ServiceBundle":
        """以 base context directory 创建 bundle。"""

        return cls(base_context_directory)

    @classmethod
    def with_executor_prefix(cls, base_context_directory: PathArg, executor_prefix: Sequence[str]) -> "ServiceBundle":
        """以 base context directory 与 executor prefix 创建 bundle。"""

        return cls(base_context_directory, executor_prefix)

    @classmethod
    def declared_services(cls) -> Dict[str, Service[Any]]:
        """收集类属性中声明的服务描述（父类在前，子类覆盖）。"""

        out: Dict[str, Service[Any]] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if name.startswith("_"):
                    continue
                if is_service(value):
                    out[name] = value
        return out

    @property
    def base_context_directory(self) -> Path:
        return self._base_context_directory

    @property
    def executor_prefix(self) -> Optional[Tuple[str, ...]]:
        return self._executor_prefix

    def names(self) -> List[str]:
        return list(self._reified)

    def __getitem__(self, name: str) -> ReifiedService[Any]:
        try:
            return self._reified[name]
        except KeyError:
            raise KeyError(f"unknown service: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._reified

    def __iter__(self) -> Iterator[str]:
        return iter(self._reified)

    def __len__(self) -> int:
        return len(self._reified)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(base_context_directory={str(self._base_context_directory)!r}, "
            f"services={self.names()!r})"
        )
