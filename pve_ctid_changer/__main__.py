from pve_ctid_changer.main import run

run()
