import os
import sys

def check_readiness(base_path=None):
    # Expected layout of the raw input directory
    inventory = {
        "eggs": [
            "SCMU_egg_data.csv"
        ],
        "covariates": [
            ("sst.csv", "sst.nc"),
            "beuti.csv",
            "npgo.txt",
            "oni.txt",
            "pdo.txt",
            "anchovy.csv"
        ],
        ".": [
            "plots.csv"
        ]
    }

    if base_path is None:
        base_path = os.environ.get("SCMU_DATA_DIR", os.path.join("data", "raw"))
    missing = []
    found_count = 0

    print(f"{'='*60}")
    print(f"{'DATA READINESS REPORT':^60}")
    print(f"{'='*60}")

    for folder, files in inventory.items():
        folder_path = os.path.normpath(os.path.join(base_path, folder))
        print(f"\n📂 Checking [{folder_path}]...")

        if not os.path.exists(folder_path):
            print(f"  ❌ FOLDER MISSING: {folder_path}")
            missing.extend(os.path.normpath(os.path.join(folder, f if isinstance(f, str) else f[0]))
                           for f in files)
            continue

        for file in files:
            # A tuple lists interchangeable formats of the same input
            options = (file,) if isinstance(file, str) else file
            present = [f for f in options if os.path.exists(os.path.join(folder_path, f))]
            if present:
                print(f"  ✅ {present[0]}")
                found_count += 1
            else:
                print(f"  ❌ MISSING: {' or '.join(options)}")
                missing.append(os.path.normpath(os.path.join(folder, options[0])))

    print(f"\n{'='*60}")
    print(f"SUMMARY:")
    print(f"  Total Expected Files: {found_count + len(missing)}")
    print(f"  Files Found:         {found_count}")
    print(f"  Files Missing:       {len(missing)}")
    print(f"{'='*60}")

    if not missing:
        print("\n🚀 ALL SYSTEMS GO: You are ready for the egg-size analysis.")
    else:
        print("\n⚠️  ACTION REQUIRED: Please move the missing files to the paths listed above.")
    return missing

if __name__ == "__main__":
    sys.exit(1 if check_readiness(*sys.argv[1:2]) else 0)
