"""
Frame Export Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding='utf-8') if readme_path.exists() else ""

# Read requirements
requirements_path = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_path.exists():
    with open(requirements_path, 'r') as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith('#')
        ]

setup(
    name="frame-export",
    version="0.1.0",
    author="Frame Export Project",
    description="Persist rendered frames and encode them into H.264 or ProRes video with FFmpeg",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=['frame_export', 'frame_export.*']),
    py_modules=['export_frames', 'run_server'],
    include_package_data=True,
    package_data={
        'frame_export': [
            'configs/*.yaml',
        ],
    },
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'httpx>=0.24.0',
        ],
        'api': [
            'fastapi>=0.100.0',
            'uvicorn>=0.23.0',
            'pydantic>=2.0.0',
            'python-multipart>=0.0.6',
        ],
    },
    entry_points={
        'console_scripts': [
            'frame-export=export_frames:main',
            'frame-export-server=run_server:main',
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Video",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    keywords="video export, ffmpeg, frames, h264, prores",
)
