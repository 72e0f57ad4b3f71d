"""
Elastic Load Balancing v2 handlers: target group, load balancer, listener
"""
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import ResourceHandler, tag_list
from ...models.data_models import ProviderResult


class _ELBv2Handler(ResourceHandler):

    @property
    def elbv2(self):
        return self.clients.get('elbv2')

    def _delete(self, operation: str, **kwargs) -> None:
        try:
            getattr(self.elbv2, operation)(**kwargs)
        except ClientError as e:
            if not self.is_not_found(e):
                raise


class TargetGroupHandler(_ELBv2Handler):
    """``aws_lb_target_group``: only the health check can change in place"""

    resource_type = "aws_lb_target_group"
    force_new = frozenset({"name", "port", "protocol", "vpc_id", "target_type"})
    required = frozenset({"name", "port", "vpc_id"})
    stable = frozenset({"arn", "arn_suffix"})
    not_found_codes = frozenset({'TargetGroupNotFound'})

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        kwargs: Dict[str, Any] = {
            'Name': config["name"],
            'Protocol': config.get("protocol", "HTTP"),
            'Port': int(config["port"]),
            'VpcId': config["vpc_id"],
            'TargetType': config.get("target_type", "instance"),
            **self._health_check(config),
        }
        if config.get("tags"):
            kwargs['Tags'] = tag_list(config["tags"])
        group = self.elbv2.create_target_group(**kwargs)['TargetGroups'][0]
        return ProviderResult(id=group['TargetGroupArn'], attributes=self._attributes(group))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            groups = self.elbv2.describe_target_groups(TargetGroupArns=[resource_id])['TargetGroups']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(groups[0]) if groups else None

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        group = self.elbv2.modify_target_group(TargetGroupArn=resource_id, **self._health_check(new_config))
        return self._attributes(group['TargetGroups'][0])

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        self._delete('delete_target_group', TargetGroupArn=resource_id)

    def _health_check(self, config: Dict[str, Any]) -> Dict[str, Any]:
        health = config.get("health_check") or {}
        return {
            'HealthCheckPath': health.get("path", "/"),
            'HealthCheckIntervalSeconds': int(health.get("interval", 30)),
            'HealthyThresholdCount': int(health.get("healthy_threshold", 3)),
            'UnhealthyThresholdCount': int(health.get("unhealthy_threshold", 3)),
            'Matcher': {'HttpCode': str(health.get("matcher", "200"))},
        }

    def _attributes(self, group: Dict[str, Any]) -> Dict[str, Any]:
        arn = group['TargetGroupArn']
        return {
            "id": arn,
            "arn": arn,
            "name": group.get('TargetGroupName'),
            "arn_suffix": arn.split(":", 5)[-1],
        }


class LoadBalancerHandler(_ELBv2Handler):
    """``aws_lb``: subnets and security groups change in place"""

    resource_type = "aws_lb"
    force_new = frozenset({"name", "internal", "load_balancer_type"})
    required = frozenset({"name", "subnets"})
    stable = frozenset({"arn", "dns_name", "zone_id"})
    not_found_codes = frozenset({'LoadBalancerNotFound'})

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        kwargs: Dict[str, Any] = {
            'Name': config["name"],
            'Subnets': list(config["subnets"]),
            'Scheme': 'internal' if config.get("internal") else 'internet-facing',
            'Type': config.get("load_balancer_type", "application"),
        }
        if config.get("security_groups"):
            kwargs['SecurityGroups'] = list(config["security_groups"])
        if config.get("tags"):
            kwargs['Tags'] = tag_list(config["tags"])
        balancer = self.elbv2.create_load_balancer(**kwargs)['LoadBalancers'][0]
        return ProviderResult(id=balancer['LoadBalancerArn'], attributes=self._attributes(balancer))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            balancers = self.elbv2.describe_load_balancers(LoadBalancerArns=[resource_id])['LoadBalancers']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(balancers[0]) if balancers else None

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        if list(old_config.get("subnets", [])) != list(new_config["subnets"]):
            self.elbv2.set_subnets(LoadBalancerArn=resource_id, Subnets=list(new_config["subnets"]))
        if list(old_config.get("security_groups", [])) != list(new_config.get("security_groups", [])):
            self.elbv2.set_security_groups(
                LoadBalancerArn=resource_id, SecurityGroups=list(new_config.get("security_groups", []))
            )
        return self.read(resource_id, new_config) or {}

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        self._delete('delete_load_balancer', LoadBalancerArn=resource_id)

    def _attributes(self, balancer: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": balancer['LoadBalancerArn'],
            "arn": balancer['LoadBalancerArn'],
            "name": balancer.get('LoadBalancerName'),
            "dns_name": balancer.get('DNSName'),
            "zone_id": balancer.get('CanonicalHostedZoneId'),
        }


class ListenerHandler(_ELBv2Handler):
    """``aws_lb_listener`` forwarding to a single target group"""

    resource_type = "aws_lb_listener"
    force_new = frozenset({"load_balancer_arn"})
    required = frozenset({"load_balancer_arn", "port", "default_target_group_arn"})
    not_found_codes = frozenset({'ListenerNotFound', 'LoadBalancerNotFound'})

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        listener = self.elbv2.create_listener(
            LoadBalancerArn=config["load_balancer_arn"],
            **self._listener_settings(config)
        )['Listeners'][0]
        return ProviderResult(id=listener['ListenerArn'], attributes=self._attributes(listener))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            listeners = self.elbv2.describe_listeners(ListenerArns=[resource_id])['Listeners']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(listeners[0]) if listeners else None

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        listener = self.elbv2.modify_listener(ListenerArn=resource_id, **self._listener_settings(new_config))
        return self._attributes(listener['Listeners'][0])

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        self._delete('delete_listener', ListenerArn=resource_id)

    def _listener_settings(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'Protocol': config.get("protocol", "HTTP"),
            'Port': int(config["port"]),
            'DefaultActions': [{'Type': 'forward', 'TargetGroupArn': config["default_target_group_arn"]}],
        }

    def _attributes(self, listener: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": listener['ListenerArn'],
            "arn": listener['ListenerArn'],
            "port": listener.get('Port'),
            "protocol": listener.get('Protocol'),
        }
