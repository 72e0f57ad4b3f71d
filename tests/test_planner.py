"""
Unit tests for the Planner
"""
import pytest

from conftest import DEFAULT_SCHEMAS, FakeProvider, load_config
from stackctl.models.data_models import DeposedObject, ResourceSchema
from stackctl.models.enums import ChangeAction, StepAction
from stackctl.models.exceptions import CyclicDependencyError, ProviderTransientError, ValidationError
from stackctl.models.expressions import UNKNOWN
from stackctl.services.executor import ApplyExecutor
from stackctl.services.planner import DefaultPlanner

SITE = """
variables:
  name: {type: string, default: site}
resources:
  test_bucket:
    site:
      config:
        name: "${var.name}"
  test_policy:
    public:
      config:
        bucket: "${test_bucket.site.id}"
  test_cdn:
    main:
      config:
        origin: "${test_bucket.site.domain_name}"
      depends_on:
        - test_policy.public
outputs:
  url:
    value: "https://${test_cdn.main.domain_name}"
"""

CDN_ONLY = """
resources:
  test_bucket:
    site:
      config:
        name: "${var.name}"
      lifecycle:
        create_before_destroy: true
  test_cdn:
    main:
      config:
        origin: "${test_bucket.site.domain_name}"
variables:
  name: {type: string, default: site}
"""


TEMPLATE = """
variables:
  size: {type: string, default: small}
resources:
  test_template:
    web:
      config:
        name: web
        size: "${var.size}"
  test_group:
    web:
      config:
        template_arn: "${test_template.web.arn}"
        version: "${test_template.web.latest_version}"
"""


class VersionedProvider(FakeProvider):
    """Every create or update of a test_template publishes a new version"""

    def __init__(self):
        super().__init__(dict(
            DEFAULT_SCHEMAS,
            test_template=ResourceSchema("test_template", force_new=frozenset({"name"}), stable=frozenset({"arn"})),
            test_group=ResourceSchema("test_group"),
        ))
        self.versions = {}

    def _attributes(self, resource_id, config):
        attributes = super()._attributes(resource_id, config)
        if resource_id.startswith("test_template"):
            self.versions[resource_id] = self.versions.get(resource_id, 0) + 1
            attributes["latest_version"] = self.versions[resource_id]
            if config.get("website"):
                attributes["endpoint"] = f"{resource_id}.website.example.net"
        return attributes


def steps_of(plan):
    return [str(step) for step in plan.steps]


@pytest.fixture
def planner(fake_provider, retry_handler):
    """Planner wired to the fake provider"""
    return DefaultPlanner(fake_provider, retry_handler)


async def converge(config, provider, backend, retry_handler, destroy=False):
    """Plan against the stored state and apply the result"""
    plan = await DefaultPlanner(provider, retry_handler).plan(config, await backend.load(), destroy=destroy)
    await ApplyExecutor(provider, backend, retry_handler).execute(plan, config)
    return plan


class TestOrdering:
    """Test cases for dependency ordering"""

    @pytest.mark.asyncio
    async def test_bucket_policy_distribution_order(self, planner):
        """Bucket before policy before distribution when creating from scratch"""
        plan = await planner.plan(load_config(SITE), None)

        assert steps_of(plan) == [
            "create test_bucket.site",
            "create test_policy.public",
            "create test_cdn.main",
        ]
        assert plan.summary.creates == 3
        assert plan.summary.total_changes == 3
        assert [len(level) for level in plan.levels] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_order_is_deterministic(self, planner):
        text = """
resources:
  test_bucket:
    c: {config: {name: c}}
    a: {config: {name: a}}
    b: {config: {name: b}}
  test_cdn:
    front: {config: {origin: "${test_bucket.b.id}"}}
"""
        orders = [steps_of(await planner.plan(load_config(text), None)) for _ in range(5)]

        assert all(order == orders[0] for order in orders)
        # Independent resources keep their declaration order
        assert orders[0][:3] == ["create test_bucket.c", "create test_bucket.a", "create test_bucket.b"]

    @pytest.mark.asyncio
    async def test_levels_group_independent_steps(self, planner):
        text = """
resources:
  test_bucket:
    a: {config: {name: a}}
    b: {config: {name: b}}
  test_cdn:
    front:
      config: {origin: "${test_bucket.a.id}"}
      depends_on: [test_bucket.b]
"""
        plan = await planner.plan(load_config(text), None)

        assert [[str(s) for s in level] for level in plan.levels] == [
            ["create test_bucket.a", "create test_bucket.b"],
            ["create test_cdn.front"],
        ]

    def test_topological_order(self, planner):
        config = load_config(SITE)

        assert planner.topological_order(config) == ["test_bucket.site", "test_policy.public", "test_cdn.main"]

    @pytest.mark.asyncio
    async def test_cycle_fails_without_provider_calls(self, fake_provider, memory_backend, retry_handler, planner):
        """A cycle is reported before anything is refreshed"""
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        fake_provider.calls.clear()
        cyclic = """
resources:
  test_bucket:
    a: {config: {name: "${test_cdn.c.id}"}}
  test_policy:
    b: {config: {bucket: "${test_bucket.a.id}"}}
  test_cdn:
    c: {config: {origin: "${test_policy.b.id}"}}
"""

        with pytest.raises(CyclicDependencyError) as exc_info:
            await planner.plan(load_config(cyclic), await memory_backend.load())

        assert fake_provider.calls == []
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"test_bucket.a", "test_policy.b", "test_cdn.c"}

    def test_validate_reports_cycle(self, planner):
        config = load_config("resources:\n  test_bucket:\n    a:\n      depends_on: [test_bucket.a]\n")

        result = planner.validate(config)

        assert not result.is_valid
        assert "test_bucket.a -> test_bucket.a" in result.errors[0]


class TestDiff:
    """Test cases for diffing declarations against state"""

    @pytest.mark.asyncio
    async def test_second_plan_is_empty(self, fake_provider, memory_backend, retry_handler, planner):
        config = load_config(SITE)
        await converge(config, fake_provider, memory_backend, retry_handler)

        plan = await planner.plan(load_config(SITE), await memory_backend.load())

        assert not plan.has_changes
        assert plan.changes == []
        assert plan.summary.total_changes == 0

    @pytest.mark.asyncio
    async def test_update_in_place(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        changed = SITE.replace("origin: \"${test_bucket.site.domain_name}\"", "origin: static.example.com")

        plan = await planner.plan(load_config(changed), await memory_backend.load())

        assert steps_of(plan) == ["update test_cdn.main"]
        change = plan.get_change("test_cdn.main")
        assert change.action == ChangeAction.UPDATE
        assert change.changed_attributes == ["origin"]

    @pytest.mark.asyncio
    async def test_update_recomputes_dependent_references(self, memory_backend, retry_handler):
        provider = VersionedProvider()
        planner = DefaultPlanner(provider, retry_handler)
        await converge(load_config(TEMPLATE), provider, memory_backend, retry_handler)

        plan = await planner.plan(load_config(TEMPLATE, {"size": "large"}), await memory_backend.load())

        assert steps_of(plan) == ["update test_template.web", "update test_group.web"]
        group = plan.get_change("test_group.web")
        assert group.changed_attributes == ["version"]
        assert group.after["version"] is UNKNOWN
        assert group.after["template_arn"] == group.before["template_arn"]

    @pytest.mark.asyncio
    async def test_apply_twice_through_update(self, memory_backend, retry_handler):
        """The whole change lands in one apply, so the next plan is empty"""
        provider = VersionedProvider()
        planner = DefaultPlanner(provider, retry_handler)
        await converge(load_config(TEMPLATE), provider, memory_backend, retry_handler)

        await converge(load_config(TEMPLATE, {"size": "large"}), provider, memory_backend, retry_handler)
        plan = await planner.plan(load_config(TEMPLATE, {"size": "large"}), await memory_backend.load())

        assert steps_of(plan) == []
        assert (await memory_backend.load()).get("test_group.web").config["version"] == 2

    @pytest.mark.asyncio
    async def test_attribute_added_by_update(self, memory_backend, retry_handler):
        provider = VersionedProvider()
        planner = DefaultPlanner(provider, retry_handler)
        await converge(load_config(TEMPLATE), provider, memory_backend, retry_handler)
        with_website = TEMPLATE.replace(
            "        size: \"${var.size}\"\n",
            "        size: \"${var.size}\"\n        website: true\n"
        ).replace(
            "        version: \"${test_template.web.latest_version}\"\n",
            "        version: \"${test_template.web.latest_version}\"\n"
            "        endpoint: \"${test_template.web.endpoint}\"\n"
        )

        plan = await planner.plan(load_config(with_website), await memory_backend.load())

        assert steps_of(plan) == ["update test_template.web", "update test_group.web"]
        assert plan.get_change("test_group.web").after["endpoint"] is UNKNOWN

        await converge(load_config(with_website), provider, memory_backend, retry_handler)
        state = await memory_backend.load()

        assert state.get("test_group.web").config["endpoint"] == "test_template-1.website.example.net"
        assert steps_of(await planner.plan(load_config(with_website), state)) == []

    @pytest.mark.asyncio
    async def test_replace_cascades_to_dependents(self, fake_provider, memory_backend, retry_handler, planner):
        """Destroying a dependency first forces its dependents to be replaced too"""
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)

        plan = await planner.plan(load_config(SITE, {"name": "renamed"}), await memory_backend.load())

        assert steps_of(plan) == [
            "delete test_cdn.main",
            "delete test_policy.public",
            "delete test_bucket.site",
            "create test_bucket.site",
            "create test_policy.public",
            "create test_cdn.main",
        ]
        assert plan.get_change("test_bucket.site").reasons == ["name forces replacement"]
        assert plan.summary.replaces == 3

    @pytest.mark.asyncio
    async def test_create_before_destroy(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(CDN_ONLY), fake_provider, memory_backend, retry_handler)

        plan = await planner.plan(load_config(CDN_ONLY, {"name": "renamed"}), await memory_backend.load())

        assert steps_of(plan) == [
            "create test_bucket.site",
            "update test_cdn.main",
            "delete-deposed test_bucket.site",
        ]
        assert plan.get_change("test_bucket.site").create_before_destroy
        assert plan.get_change("test_cdn.main").action == ChangeAction.UPDATE

    @pytest.mark.asyncio
    async def test_removed_declaration_is_deleted(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        without_cdn = SITE.split("  test_cdn:")[0]

        plan = await planner.plan(load_config(without_cdn), await memory_backend.load())

        assert steps_of(plan) == ["delete test_cdn.main"]
        assert plan.get_change("test_cdn.main").reasons == ["no longer declared"]

    @pytest.mark.asyncio
    async def test_vanished_resource_is_recreated(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        state = await memory_backend.load()
        fake_provider.resources.pop(state.get("test_cdn.main").id)

        plan = await planner.plan(load_config(SITE), state)

        assert plan.removed == ["test_cdn.main"]
        assert steps_of(plan) == ["create test_cdn.main"]
        assert plan.prior_state.get("test_cdn.main") is None
        # The stored record is left alone until apply
        assert state.get("test_cdn.main") is not None

    @pytest.mark.asyncio
    async def test_refresh_retries_transient_errors(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        fake_provider.fail("read", "test_bucket", ProviderTransientError("throttled"))

        plan = await planner.plan(load_config(SITE), await memory_backend.load())

        assert not plan.has_changes
        assert len(fake_provider.provider_calls("read")) == 4

    @pytest.mark.asyncio
    async def test_leftover_deposed_object_is_deleted(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)
        state = await memory_backend.load()
        state.get("test_bucket.site").deposed.append(DeposedObject("test_bucket-old", {"name": "old"}, {}))
        await memory_backend.save(state)

        plan = await planner.plan(load_config(SITE), await memory_backend.load())

        assert steps_of(plan) == ["delete-deposed test_bucket.site"]
        assert plan.steps[0].action == StepAction.DELETE_DEPOSED


class TestDestroy:
    """Test cases for destroy plans"""

    @pytest.mark.asyncio
    async def test_destroy_reverses_dependency_order(self, fake_provider, memory_backend, retry_handler, planner):
        await converge(load_config(SITE), fake_provider, memory_backend, retry_handler)

        plan = await planner.plan(load_config(SITE), await memory_backend.load(), destroy=True)

        assert steps_of(plan) == [
            "delete test_cdn.main",
            "delete test_policy.public",
            "delete test_bucket.site",
        ]
        assert plan.destroy
        assert plan.summary.deletes == 3

    @pytest.mark.asyncio
    async def test_destroying_bucket_warns_about_objects(self, memory_backend, retry_handler):
        provider = FakeProvider({"aws_s3_bucket": ResourceSchema("aws_s3_bucket", force_new=frozenset({"bucket"}))})
        config = load_config("resources:\n  aws_s3_bucket:\n    site: {config: {bucket: site}}\n")
        await converge(config, provider, memory_backend, retry_handler)

        plan = await DefaultPlanner(provider, retry_handler).plan(config, await memory_backend.load(), destroy=True)

        assert plan.warnings == ["aws_s3_bucket.site will be deleted; objects stored in the bucket are lost"]

    @pytest.mark.asyncio
    async def test_destroy_empty_state(self, planner):
        plan = await planner.plan(load_config(SITE), None, destroy=True)

        assert not plan.has_changes

    @pytest.mark.asyncio
    async def test_prevent_destroy(self, fake_provider, memory_backend, retry_handler, planner):
        protected = SITE.replace(
            "        name: \"${var.name}\"\n",
            "        name: \"${var.name}\"\n      lifecycle:\n        prevent_destroy: true\n"
        )
        await converge(load_config(protected), fake_provider, memory_backend, retry_handler)
        state = await memory_backend.load()

        with pytest.raises(ValidationError):
            await planner.plan(load_config(protected), state, destroy=True)
        with pytest.raises(ValidationError):
            await planner.plan(load_config(protected, {"name": "renamed"}), state)


class TestValidation:
    """Test cases for validation against provider schemas"""

    @pytest.mark.asyncio
    async def test_unknown_resource_type(self, planner, fake_provider):
        config = load_config("resources:\n  test_queue:\n    q: {config: {name: q}}\n")

        with pytest.raises(ValidationError) as exc_info:
            await planner.plan(config, None)

        assert "unknown resource type 'test_queue'" in exc_info.value.message
        assert fake_provider.provider_calls() == []

    def test_missing_required_attribute(self, planner):
        config = load_config("resources:\n  test_cdn:\n    c: {config: {comment: x}}\n")

        result = planner.validate(config, planner.provider_schemas())

        assert not result.is_valid
        assert "missing required attribute(s) origin" in result.errors[0]

    def test_public_bucket_behind_cdn_warns(self, planner):
        config = load_config("""
resources:
  aws_s3_bucket:
    site: {config: {bucket: site}}
  aws_s3_bucket_policy:
    public:
      config:
        bucket: "${aws_s3_bucket.site.id}"
        policy:
          Statement:
            - Effect: Allow
              Principal: "*"
              Action: s3:GetObject
              Resource: "${aws_s3_bucket.site.arn}/*"
  aws_cloudfront_distribution:
    cdn: {config: {origin_domain_name: "${aws_s3_bucket.site.bucket_regional_domain_name}"}}
""")

        result = planner.validate(config)

        assert result.is_valid
        assert len(result.warnings) == 1
        assert "aws_s3_bucket.site is publicly readable (policy aws_s3_bucket_policy.public)" in result.warnings[0]

    def test_private_bucket_behind_cdn_does_not_warn(self, planner):
        config = load_config("""
resources:
  aws_s3_bucket:
    site: {config: {bucket: site, acl: private}}
  aws_cloudfront_distribution:
    cdn: {config: {origin_domain_name: "${aws_s3_bucket.site.bucket_regional_domain_name}"}}
""")

        assert planner.validate(config).warnings == []
