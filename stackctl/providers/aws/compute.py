"""
EC2 launch template and Auto Scaling group handlers
"""
import base64
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import ResourceHandler, tag_list
from ...models.data_models import ProviderResult


class LaunchTemplateHandler(ResourceHandler):
    """``aws_launch_template``: updates create a new version and make it the default"""

    resource_type = "aws_launch_template"
    force_new = frozenset({"name"})
    required = frozenset({"name", "image_id"})
    not_found_codes = frozenset({
        'InvalidLaunchTemplateId.NotFound',
        'InvalidLaunchTemplateId.Malformed',
        'InvalidLaunchTemplateName.NotFoundException',
    })

    @property
    def ec2(self):
        return self.clients.get('ec2')

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        kwargs: Dict[str, Any] = {
            'LaunchTemplateName': config["name"],
            'LaunchTemplateData': self._template_data(config),
        }
        if config.get("tags"):
            kwargs['TagSpecifications'] = [{'ResourceType': 'launch-template', 'Tags': tag_list(config["tags"])}]
        response = self.ec2.create_launch_template(**kwargs)
        template = response['LaunchTemplate']
        return ProviderResult(id=template['LaunchTemplateId'], attributes=self._attributes(template))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.ec2.describe_launch_templates(LaunchTemplateIds=[resource_id])
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        templates = response.get('LaunchTemplates', [])
        return self._attributes(templates[0]) if templates else None

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        response = self.ec2.create_launch_template_version(
            LaunchTemplateId=resource_id,
            LaunchTemplateData=self._template_data(new_config)
        )
        version = response['LaunchTemplateVersion']['VersionNumber']
        self.ec2.modify_launch_template(LaunchTemplateId=resource_id, DefaultVersion=str(version))
        return self.read(resource_id, new_config) or {}

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        try:
            self.ec2.delete_launch_template(LaunchTemplateId=resource_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def _template_data(self, config: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'ImageId': config["image_id"],
            'InstanceType': config.get("instance_type", "t3.micro"),
        }
        if config.get("user_data"):
            data['UserData'] = base64.b64encode(config["user_data"].encode("utf-8")).decode("ascii")
        if config.get("security_group_ids"):
            data['SecurityGroupIds'] = list(config["security_group_ids"])
        if config.get("key_name"):
            data['KeyName'] = config["key_name"]
        return data

    def _attributes(self, template: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": template['LaunchTemplateId'],
            "name": template['LaunchTemplateName'],
            "default_version": template.get('DefaultVersionNumber'),
            "latest_version": template.get('LatestVersionNumber'),
        }


class AutoScalingGroupHandler(ResourceHandler):
    """``aws_autoscaling_group`` launched from a launch template"""

    resource_type = "aws_autoscaling_group"
    force_new = frozenset({"name"})
    required = frozenset({"name", "launch_template_id", "min_size", "max_size", "vpc_zone_identifier"})
    not_found_codes = frozenset({'ValidationError'})

    @property
    def autoscaling(self):
        return self.clients.get('autoscaling')

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        name = config["name"]
        kwargs = self._group_settings(config)
        kwargs['TargetGroupARNs'] = list(config.get("target_group_arns", []))
        if config.get("tags"):
            kwargs['Tags'] = [
                dict(tag, ResourceId=name, ResourceType='auto-scaling-group', PropagateAtLaunch=True)
                for tag in tag_list(config["tags"])
            ]
        self.autoscaling.create_auto_scaling_group(AutoScalingGroupName=name, **kwargs)
        return ProviderResult(id=name, attributes=self.read(name, config) or {"id": name, "name": name})

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self.autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[resource_id])
        groups = [g for g in response.get('AutoScalingGroups', []) if g.get('Status') != 'Delete in progress']
        if not groups:
            return None
        group = groups[0]
        return {
            "id": group['AutoScalingGroupName'],
            "name": group['AutoScalingGroupName'],
            "arn": group.get('AutoScalingGroupARN'),
            "min_size": group.get('MinSize'),
            "max_size": group.get('MaxSize'),
            "desired_capacity": group.get('DesiredCapacity'),
            "target_group_arns": group.get('TargetGroupARNs', []),
        }

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        self.autoscaling.update_auto_scaling_group(AutoScalingGroupName=resource_id, **self._group_settings(new_config))

        old_groups = set(old_config.get("target_group_arns", []))
        new_groups = set(new_config.get("target_group_arns", []))
        if new_groups - old_groups:
            self.autoscaling.attach_load_balancer_target_groups(
                AutoScalingGroupName=resource_id, TargetGroupARNs=sorted(new_groups - old_groups)
            )
        if old_groups - new_groups:
            self.autoscaling.detach_load_balancer_target_groups(
                AutoScalingGroupName=resource_id, TargetGroupARNs=sorted(old_groups - new_groups)
            )
        return self.read(resource_id, new_config) or {}

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        try:
            self.autoscaling.delete_auto_scaling_group(AutoScalingGroupName=resource_id, ForceDelete=True)
        except ClientError as e:
            # Auto Scaling reports an unknown group as a generic ValidationError
            if not (self.is_not_found(e) and "not found" in str(e).lower()):
                raise

    def _group_settings(self, config: Dict[str, Any]) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            'LaunchTemplate': {
                'LaunchTemplateId': config["launch_template_id"],
                'Version': str(config.get("launch_template_version", "$Latest")),
            },
            'MinSize': int(config["min_size"]),
            'MaxSize': int(config["max_size"]),
            'VPCZoneIdentifier': ",".join(config["vpc_zone_identifier"]),
            'HealthCheckType': config.get("health_check_type", "EC2"),
            'HealthCheckGracePeriod': int(config.get("health_check_grace_period", 300)),
        }
        if "desired_capacity" in config:
            settings['DesiredCapacity'] = int(config["desired_capacity"])
        return settings
