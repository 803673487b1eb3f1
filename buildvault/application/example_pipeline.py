from buildvault.infra.tasks import Artifact, Dependency, Task

ALPINE = "docker.io/library/alpine"


def build_example_pipeline(artifacts_dir: str = "build-artifacts") -> Task:
    """
    Two data sources merged by a combiner task, whose report is captured to the host.

        data-source-1 ─┐
                       ├─> data-combiner -> <artifacts_dir>/combined.txt
        data-source-2 ─┘
    """
    source_1 = Task(
        name="data-source-1",
        base_image=ALPINE,
        commands=[
            "mkdir -p /output",
            "echo 'Source 1 Data' > /output/source1.txt",
        ],
    )

    source_2 = Task(
        name="data-source-2",
        base_image=ALPINE,
        commands=[
            "mkdir -p /output",
            "echo 'Source 2 Data' > /output/source2.txt",
        ],
    )

    return Task(
        name="data-combiner",
        base_image=ALPINE,
        dependencies=[
            Dependency(source_1, [Artifact("/output/source1.txt", "/output/source1.txt")]),
            Dependency(source_2, [Artifact("/output/source2.txt", "/output/source2.txt")]),
        ],
        commands=[
            "mkdir -p /combined",
            "cat /output/source1.txt > /combined/combined.txt",
            "cat /output/source2.txt >> /combined/combined.txt",
            "echo 'Both sources combined' >> /combined/combined.txt",
            "cat /combined/combined.txt",
            "grep -q 'Source 1 Data' /combined/combined.txt || exit 1",
            "grep -q 'Source 2 Data' /combined/combined.txt || exit 1",
        ],
        artifacts=["/combined/combined.txt"],
        artifacts_dir=artifacts_dir,
    )
