from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from routectl.src.models import (
    DEFAULT_PORT,
    EndpointControl,
    MatchMode,
    PodRef,
    RouteRule,
    RouteRuleId,
    RuleExtraInfo,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PodRefDto(_CamelModel):
    namespace: str = Field(min_length=1)
    name: str = Field(min_length=1)

    def to_model(self) -> PodRef:
        return PodRef(namespace=self.namespace, name=self.name)


class EndpointControlDto(_CamelModel):
    """URI condition; ``matchMode`` wins over the legacy ``useRegex`` flag."""

    uri: str
    match_mode: MatchMode | None = Field(default=None, alias="matchMode")
    use_regex: bool | None = Field(default=None, alias="useRegex")

    def to_model(self) -> EndpointControl:
        mode = self.match_mode or MatchMode.from_legacy(self.use_regex)
        return EndpointControl(uri=self.uri, match_mode=mode)

    @classmethod
    def from_model(cls, control: EndpointControl) -> EndpointControlDto:
        return cls(
            uri=control.uri,
            match_mode=control.match_mode,
            use_regex=control.match_mode.to_legacy(),
        )


class RuleExtraInfoDto(_CamelModel):
    port_number: int = Field(default=DEFAULT_PORT, ge=1, le=65535, alias="portNumber")


class RouteRuleDto(_CamelModel):
    namespace: str = Field(min_length=1)
    des_service: str = Field(min_length=1, alias="desService")
    name: str = Field(min_length=1)
    src_pods: list[PodRefDto] = Field(default_factory=list, alias="srcPods")
    des_pods: list[PodRefDto] = Field(default_factory=list, alias="desPods")
    endpoint_controls: list[EndpointControlDto] = Field(
        default_factory=list, alias="endpointControls"
    )
    extra_info: RuleExtraInfoDto | None = Field(default=None, alias="extraInfo")

    def to_model(self) -> RouteRule:
        extra = self.extra_info or RuleExtraInfoDto()
        return RouteRule(
            namespace=self.namespace,
            des_service=self.des_service,
            name=self.name,
            src_pods=tuple(pod.to_model() for pod in self.src_pods),
            des_pods=tuple(pod.to_model() for pod in self.des_pods),
            endpoint_controls=tuple(control.to_model() for control in self.endpoint_controls),
            extra=RuleExtraInfo(port=extra.port_number),
        )

    @classmethod
    def from_model(cls, rule: RouteRule) -> RouteRuleDto:
        return cls(
            namespace=rule.namespace,
            des_service=rule.des_service,
            name=rule.name,
            src_pods=[PodRefDto(namespace=p.namespace, name=p.name) for p in rule.src_pods],
            des_pods=[PodRefDto(namespace=p.namespace, name=p.name) for p in rule.des_pods],
            endpoint_controls=[EndpointControlDto.from_model(c) for c in rule.endpoint_controls],
            extra_info=RuleExtraInfoDto(port_number=rule.extra.port),
        )


class RouteRuleIdDto(_CamelModel):
    namespace: str = Field(min_length=1)
    des_service: str = Field(min_length=1, alias="desService")
    name: str | None = None

    def to_model(self) -> RouteRuleId:
        return RouteRuleId(namespace=self.namespace, des_service=self.des_service, name=self.name)


class OperationResult(BaseModel):
    success: bool
    message: str = ""
